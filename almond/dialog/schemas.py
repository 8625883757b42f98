"""
Program Schemas - The resolved program IR and the dialog session state.

Intents describe what the user asked for; the types here describe what the
dialog has actually resolved so far:

    DeviceDescriptor   a concrete device picked for a stage
    ParamSlot          one parameter while slot filling is in progress
    StageDraft         a stage whose device / slots are still being resolved
    Stage              a fully resolved trigger, query or action
    Program            the ordered stages, ready for the compiler
    DialogState        mode + program in progress + pending context

Invariants:
- At most one trigger, and it comes first
- At most one action, and it comes last
- A Stage is never created with unfilled slots; after creation only its
  filter list may grow
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from almond.dialog.errors import IncompleteProgramError, MalformedIntentError
from almond.dialog.thingpedia import (
    FilterOperator,
    FunctionRole,
    FunctionSchema,
    ValueType,
)

if TYPE_CHECKING:
    from almond.dialog.intents import FunctionIntent
    from almond.dialog.rule_builder import FilterSpec, RuleDraft
    from almond.dialog.slot_filler import SlotPrompt


# ---------------------------------------------------------------------------
# DEVICES AND CONTACTS
# ---------------------------------------------------------------------------

class DeviceDescriptor(BaseModel):
    """A configured device instance. Immutable once resolved."""
    model_config = ConfigDict(frozen=True)

    kind: str
    id: str
    label: str


class Contact(BaseModel):
    """A remote principal that can run rules on our behalf."""
    model_config = ConfigDict(frozen=True)

    principal: str
    name: str


# ---------------------------------------------------------------------------
# VALUES
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LiteralValue:
    """A constant typed by the user or given in the intent."""
    type: ValueType
    value: Any


@dataclass(frozen=True)
class VariableRef:
    """A reference to an earlier stage's output binding."""
    field: str
    variable: str


@dataclass(frozen=True)
class EventRef:
    """The textual description of the previous stage's result."""
    pass


Value = Union[LiteralValue, VariableRef, EventRef]


def display_value(value: Any) -> str:
    """Render a literal the way the user typed it (5 rather than 5.0)."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# ---------------------------------------------------------------------------
# FILTERS AND BINDINGS
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Predicate:
    """
    A filter on one output field of a stage.

    Attributes:
        field: Output field name
        operator: Comparison operator
        value: Literal to compare against
        value_type: Declared type of the field
    """
    field: str
    operator: FilterOperator
    value: Any
    value_type: ValueType = ValueType.STRING

    def describe(self) -> str:
        """Human readable form, e.g. ``title contains lol``."""
        return f"{self.field} {self.operator.value} {display_value(self.value)}"


@dataclass(frozen=True)
class Binding:
    """A variable exposing one output field of a stage."""
    field: str
    variable: str
    type: ValueType


# ---------------------------------------------------------------------------
# PARAMETER SLOTS
# ---------------------------------------------------------------------------

@dataclass
class ParamSlot:
    """
    One declared parameter of the stage currently being filled.

    Lives only while slot filling runs for that stage.
    """
    name: str
    declared_type: ValueType
    question: Optional[str] = None
    filled: bool = False
    value: Optional[Value] = None

    def fill(self, value: Value) -> None:
        self.value = value
        self.filled = True


# ---------------------------------------------------------------------------
# STAGES
# ---------------------------------------------------------------------------

@dataclass
class Stage:
    """
    One resolved step of a program.

    Attributes:
        role: Trigger, query or action
        schema: The function's catalog entry
        device: Resolved device (None when the stage runs remotely)
        args: Parameter name to value, complete
        output_bindings: Variables for the function's output fields
        filters: Predicates, in attachment order
        remote: Contact running this stage, if any
    """
    role: FunctionRole
    schema: FunctionSchema
    device: Optional[DeviceDescriptor]
    args: Dict[str, Value] = field(default_factory=dict)
    output_bindings: List[Binding] = field(default_factory=list)
    filters: List[Predicate] = field(default_factory=list)
    remote: Optional[Contact] = None

    @property
    def kind(self) -> str:
        return self.schema.kind

    @property
    def channel(self) -> str:
        return self.schema.name

    @property
    def is_remote(self) -> bool:
        return self.remote is not None

    def missing_params(self) -> List[str]:
        return [spec.name for spec in self.schema.params if spec.name not in self.args]


@dataclass
class StageDraft:
    """
    A stage whose device and parameters are still being resolved.

    Created from a function intent, turned into a Stage by ``to_stage`` once
    every slot is filled.
    """
    role: FunctionRole
    schema: FunctionSchema
    slots: List[ParamSlot]
    filters: List[Predicate] = field(default_factory=list)
    device: Optional[DeviceDescriptor] = None
    remote: Optional[Contact] = None
    person: Optional[str] = None

    def next_unfilled(self) -> Optional[ParamSlot]:
        for slot in self.slots:
            if not slot.filled:
                return slot
        return None

    def to_stage(self, program: "Program") -> Stage:
        """
        Freeze the draft into a Stage with fresh output variables.

        Raises:
            IncompleteProgramError: If a slot is still unfilled
        """
        missing = [slot.name for slot in self.slots if not slot.filled]
        if missing:
            raise IncompleteProgramError(
                f"{self.schema.function_id} has unfilled slots: {', '.join(missing)}"
            )
        return Stage(
            role=self.role,
            schema=self.schema,
            device=self.device,
            args={slot.name: slot.value for slot in self.slots},
            output_bindings=[
                Binding(field=spec.name, variable=program.new_variable(spec.name), type=spec.type)
                for spec in self.schema.outputs
            ],
            filters=list(self.filters),
            remote=self.remote,
        )


# ---------------------------------------------------------------------------
# PROGRAM
# ---------------------------------------------------------------------------

@dataclass
class Program:
    """
    Ordered sequence of resolved stages.

    Trigger-or-none first, then queries, then the action. A program without
    a trigger runs once, right now.
    """
    stages: List[Stage] = field(default_factory=list)

    @property
    def trigger(self) -> Optional[Stage]:
        if self.stages and self.stages[0].role is FunctionRole.TRIGGER:
            return self.stages[0]
        return None

    @property
    def queries(self) -> List[Stage]:
        return [stage for stage in self.stages if stage.role is FunctionRole.QUERY]

    @property
    def action(self) -> Optional[Stage]:
        if self.stages and self.stages[-1].role is FunctionRole.ACTION:
            return self.stages[-1]
        return None

    @property
    def remote_stage(self) -> Optional[Stage]:
        for stage in self.stages:
            if stage.is_remote:
                return stage
        return None

    @property
    def is_empty(self) -> bool:
        return not self.stages

    @property
    def is_read_only(self) -> bool:
        """Only local queries: safe to run without asking for confirmation."""
        return bool(self.stages) and all(
            stage.role is FunctionRole.QUERY and not stage.is_remote for stage in self.stages
        )

    def append(self, stage: Stage) -> None:
        """
        Append a resolved stage, enforcing stage ordering.

        Raises:
            MalformedIntentError: If the stage would break trigger/action order
        """
        if self.action is not None:
            raise MalformedIntentError("Cannot add a stage after the action")
        if stage.role is FunctionRole.TRIGGER and self.stages:
            raise MalformedIntentError("The trigger must be the first stage")
        self.stages.append(stage)

    def snapshot(self) -> Tuple[int, List[int]]:
        """Stage count and filter counts, to roll back a failed intent."""
        return len(self.stages), [len(stage.filters) for stage in self.stages]

    def restore(self, snapshot: Tuple[int, List[int]]) -> None:
        count, filter_counts = snapshot
        del self.stages[count:]
        for stage, filter_count in zip(self.stages, filter_counts):
            del stage.filters[filter_count:]

    def available_bindings(self) -> List[Tuple[Stage, Binding]]:
        """Every output binding, ordered by stage then declaration."""
        return [(stage, binding) for stage in self.stages for binding in stage.output_bindings]

    def lookup_binding(self, field_name: str) -> Optional[Binding]:
        """The most recent binding exposing ``field_name``."""
        for _, binding in reversed(self.available_bindings()):
            if binding.field == field_name:
                return binding
        return None

    def new_variable(self, field_name: str) -> str:
        """A variable name for ``field_name`` that no stage uses yet."""
        taken = {binding.variable for _, binding in self.available_bindings()}
        name = f"v_{field_name}"
        counter = 2
        while name in taken:
            name = f"v_{field_name}_{counter}"
            counter += 1
        return name


# ---------------------------------------------------------------------------
# DIALOG STATE
# ---------------------------------------------------------------------------

class DialogMode(str, Enum):
    """What the session is waiting for."""
    IDLE = "idle"
    AWAITING_BUILDER_CHOICE = "awaiting_builder_choice"
    AWAITING_COMMAND = "awaiting_command"
    AWAITING_DEVICE_CHOICE = "awaiting_device_choice"
    AWAITING_SLOT_VALUE = "awaiting_slot_value"
    AWAITING_FILTER_TARGET = "awaiting_filter_target"
    AWAITING_FILTER_SPEC = "awaiting_filter_spec"
    AWAITING_FILTER_VALUE = "awaiting_filter_value"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    DONE = "done"


@dataclass
class PendingContext:
    """
    Everything a sub-state needs to resume on the next intent.

    Attributes:
        queue: Function intents still to be turned into stages
        current: Stage being resolved right now
        candidates: Devices offered in the current device choice
        slot_prompt: Question currently asked by the slot filler
        draft: Rule being assembled by the guided builder
        builder_role: Role picked in the builder, waiting for a command
        filter_target: Builder slot of the stage being filtered
        filter_spec: Field and operator picked for the new filter
        snapshot: Program state before the current intent
    """
    queue: List["FunctionIntent"] = field(default_factory=list)
    current: Optional[StageDraft] = None
    candidates: List[DeviceDescriptor] = field(default_factory=list)
    slot_prompt: Optional["SlotPrompt"] = None
    draft: Optional["RuleDraft"] = None
    builder_role: Optional[FunctionRole] = None
    filter_target: Optional[FunctionRole] = None
    filter_spec: Optional["FilterSpec"] = None
    snapshot: Optional[Tuple[int, List[int]]] = None


@dataclass
class DialogState:
    """
    The single mutable state of one dialog session.

    ``generation`` increases on every reset; asynchronous work that started
    under an older generation must not touch the state when it completes.
    """
    mode: DialogMode = DialogMode.IDLE
    program: Program = field(default_factory=Program)
    pending: PendingContext = field(default_factory=PendingContext)
    generation: int = 0

    def reset(self) -> None:
        self.mode = DialogMode.IDLE
        self.program = Program()
        self.pending = PendingContext()
        self.generation += 1
