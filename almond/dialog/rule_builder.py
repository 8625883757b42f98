"""
Rule Builder - The guided "When / Get / Do" flow and its filter subflow.

Instead of typing a whole rule, the user assembles it one slot at a time:

    Click on one of the following buttons to start adding command.
      When | Get | Do
    -> pick a category (or type a command)
    -> pick a function
    Add more commands and filters or run your command if you are ready.
      When: <label> | Get: <label> | Do | Add a filter | Run it

Filters are attached in three steps: which command, which (field, operator)
pair, which value. Each step only offers what the command supports.

Nothing is resolved while building: the draft holds plain intents. "Run it"
turns the draft into a RuleIntent, which then goes through device
resolution, slot filling and confirmation like any other rule.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from almond.dialog.errors import MalformedIntentError
from almond.dialog.intents import (
    ActionIntent,
    Argument,
    ArgumentType,
    CommandIntent,
    FilterIntent,
    FunctionIntent,
    QueryIntent,
    RuleIntent,
    SpecialIntent,
    SpecialName,
    TriggerIntent,
    intent_to_json,
)
from almond.dialog.schemas import Predicate
from almond.dialog.slot_filler import coerce_literal
from almond.dialog.thingpedia import (
    CATEGORIES,
    FilterOperator,
    FunctionRegistry,
    FunctionRole,
    FunctionSchema,
    ValueType,
    function_registry,
    operators_for,
)
from almond.services.delegate import AskSpecial, OutputChannel


logger = logging.getLogger("almond.dialog.rule_builder")


ROLES = (FunctionRole.TRIGGER, FunctionRole.QUERY, FunctionRole.ACTION)

INTENT_CLASSES = {
    FunctionRole.TRIGGER: TriggerIntent,
    FunctionRole.QUERY: QueryIntent,
    FunctionRole.ACTION: ActionIntent,
}

START_TEXT = "Click on one of the following buttons to start adding command."
MENU_TEXT = "Add more commands and filters or run your command if you are ready."


def role_of(intent: FunctionIntent) -> FunctionRole:
    """The rule position an intent class stands for."""
    for role, cls in INTENT_CLASSES.items():
        if isinstance(intent, cls):
            return role
    raise MalformedIntentError(f"Not a function intent: {type(intent).__name__}")


def _button_payload(intent) -> str:
    return intent_to_json(intent)


BACK_PAYLOAD = _button_payload(SpecialIntent(name=SpecialName.BACK))
NOW_PAYLOAD = _button_payload(SpecialIntent(name=SpecialName.EMPTY))


# ---------------------------------------------------------------------------
# DRAFT
# ---------------------------------------------------------------------------

@dataclass
class DraftStage:
    """A command placed in one builder slot, with its filters."""
    intent: FunctionIntent
    schema: FunctionSchema
    filters: List[Predicate] = field(default_factory=list)

    @property
    def label(self) -> str:
        return ", ".join([self.schema.canonical] + [p.describe() for p in self.filters])


@dataclass
class RuleDraft:
    """
    The rule being assembled.

    Attributes:
        stages: Builder slot to the command placed in it
        now: "Do it now" was picked for the When slot
    """
    stages: Dict[FunctionRole, DraftStage] = field(default_factory=dict)
    now: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.stages and not self.now

    @property
    def runnable(self) -> bool:
        return bool(self.stages)

    def filterable(self) -> List[FunctionRole]:
        """Slots whose command has output fields, in rule order."""
        return [role for role in ROLES if role in self.stages and self.stages[role].schema.outputs]

    def slot_label(self, role: FunctionRole) -> str:
        stage = self.stages.get(role)
        if stage is not None:
            return f"{role.builder_label}: {stage.label}"
        if role is FunctionRole.TRIGGER and self.now:
            return f"{role.builder_label}: now"
        return role.builder_label


@dataclass(frozen=True)
class FilterSpec:
    """A (field, operator) pair offered for a filter."""
    field: str
    operator: FilterOperator
    value_type: ValueType

    def to_intent(self) -> FilterIntent:
        return FilterIntent(value_type=self.value_type, operator=self.operator, field=self.field)


class MenuAction(str, Enum):
    PICK = "pick"
    FILTER = "filter"
    RUN = "run"


@dataclass(frozen=True)
class MenuEntry:
    action: MenuAction
    label: str
    role: Optional[FunctionRole] = None


# ---------------------------------------------------------------------------
# BUILDER
# ---------------------------------------------------------------------------

class RuleBuilder:
    """
    Emits the builder menus and applies the user's picks to a RuleDraft.

    The builder never touches devices or the program; the state machine
    decides when to call which step.
    """

    def __init__(self, functions: Optional[FunctionRegistry] = None):
        self.functions = functions or function_registry

    # -----------------------------------------------------------------------
    # MAIN MENU
    # -----------------------------------------------------------------------

    def menu_entries(self, draft: RuleDraft) -> List[MenuEntry]:
        entries = [MenuEntry(MenuAction.PICK, draft.slot_label(role), role) for role in ROLES]
        if draft.filterable():
            entries.append(MenuEntry(MenuAction.FILTER, "Add a filter"))
        if draft.runnable:
            entries.append(MenuEntry(MenuAction.RUN, "Run it"))
        return entries

    def show_menu(self, draft: RuleDraft, channel: OutputChannel) -> None:
        """Show the When/Get/Do menu, or the start prompt for an empty draft."""
        channel.send(START_TEXT if draft.is_empty else MENU_TEXT)
        channel.send_ask_special(AskSpecial.GENERIC)
        for index, entry in enumerate(self.menu_entries(draft)):
            channel.send_choice(index, "menu", entry.label, entry.label)

    def pick(self, draft: RuleDraft, index) -> MenuEntry:
        """
        Map a menu choice to its entry.

        Raises:
            MalformedIntentError: If the index was not offered
        """
        entries = self.menu_entries(draft)
        if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(entries):
            raise MalformedIntentError(f"Invalid menu choice: {index!r}")
        return entries[index]

    # -----------------------------------------------------------------------
    # COMMAND SELECTION
    # -----------------------------------------------------------------------

    def show_categories(self, role: FunctionRole, channel: OutputChannel) -> None:
        channel.send_ask_special(AskSpecial.COMMAND)
        channel.send("Pick one from the following categories or simply type in.")
        if role is FunctionRole.TRIGGER:
            channel.send_button("Do it now", NOW_PAYLOAD)
        for category, name in CATEGORIES:
            channel.send_button(name, _button_payload(CommandIntent(type="help", value=category)))
        channel.send_button("Back", BACK_PAYLOAD)

    def show_category(self, role: FunctionRole, category: str, channel: OutputChannel) -> None:
        """List the functions of one category usable in ``role``."""
        functions = self.functions.list_functions(category=category, role=role)
        logger.debug(f"Category {category} has {len(functions)} {role.value} functions")
        channel.send_ask_special(AskSpecial.COMMAND)
        channel.send("Pick a command below." if functions else "There is nothing to pick in this category.")
        for schema in functions:
            intent = INTENT_CLASSES[role](function_id=schema.function_id)
            channel.send_button(schema.canonical, _button_payload(intent))
        channel.send_button("Back", BACK_PAYLOAD)

    def place(self, draft: RuleDraft, intent: FunctionIntent) -> FunctionRole:
        """
        Put a command in the slot matching its role, replacing what was there.

        Raises:
            MalformedIntentError: If the function is unknown or used in the
                wrong role
        """
        role = role_of(intent)
        schema = self.functions.get(intent.function_id)
        if schema.role is not role:
            raise MalformedIntentError(f"{schema.function_id} cannot be used as a {role.value}")
        draft.stages[role] = DraftStage(intent=intent, schema=schema)
        if role is FunctionRole.TRIGGER:
            draft.now = False
        return role

    def place_rule(self, draft: RuleDraft, rule: RuleIntent) -> None:
        for part in rule.parts():
            self.place(draft, part)

    # -----------------------------------------------------------------------
    # FILTERS
    # -----------------------------------------------------------------------

    def show_filter_targets(self, draft: RuleDraft, channel: OutputChannel) -> None:
        channel.send("Pick the command you want to add filters to:")
        channel.send_ask_special(AskSpecial.GENERIC)
        targets = draft.filterable()
        for index, role in enumerate(targets):
            label = draft.slot_label(role)
            channel.send_choice(index, "filter", label, label)
        channel.send_choice(len(targets), "filter", "Back", "Back")

    def pick_filter_target(self, draft: RuleDraft, index) -> Optional[FunctionRole]:
        """
        Map a target choice to a builder slot; None means Back.

        Raises:
            MalformedIntentError: If the index was not offered
        """
        targets = draft.filterable()
        if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index <= len(targets):
            raise MalformedIntentError(f"Invalid filter target: {index!r}")
        if index == len(targets):
            return None
        return targets[index]

    def filter_specs(self, stage: DraftStage) -> List[FilterSpec]:
        return [
            FilterSpec(field=output.name, operator=operator, value_type=output.type)
            for output in stage.schema.outputs
            for operator in operators_for(output.type)
        ]

    def show_filter_specs(self, stage: DraftStage, channel: OutputChannel) -> None:
        channel.send("Pick the filter you want to add:")
        channel.send_ask_special(AskSpecial.COMMAND)
        for spec in self.filter_specs(stage):
            channel.send_button(f"{spec.field} {spec.operator.value} ____", _button_payload(spec.to_intent()))
        channel.send_button("Back", BACK_PAYLOAD)

    def match_filter(self, stage: DraftStage, intent: FilterIntent) -> FilterSpec:
        """
        Check a filter intent against the pairs offered for ``stage``.

        Raises:
            MalformedIntentError: If the pair was not offered
        """
        for spec in self.filter_specs(stage):
            if spec.field == intent.field and spec.operator is intent.operator:
                return spec
        raise MalformedIntentError(
            f"Filter {intent.field} {intent.operator.value} is not available for {stage.schema.function_id}"
        )

    def ask_filter_value(self, channel: OutputChannel) -> None:
        channel.send("What's the value of this filter?")
        channel.send_ask_special(AskSpecial.GENERIC)

    def add_filter(self, stage: DraftStage, spec: FilterSpec, raw) -> Predicate:
        """
        Attach a filter to a draft stage.

        Raises:
            ValueError: If ``raw`` does not fit the field's type
        """
        literal = coerce_literal(spec.value_type, raw)
        predicate = Predicate(
            field=spec.field,
            operator=spec.operator,
            value=literal.value,
            value_type=spec.value_type,
        )
        stage.filters.append(predicate)
        logger.debug(f"Filter added to {stage.schema.function_id}: {predicate.describe()}")
        return predicate

    # -----------------------------------------------------------------------
    # RUN
    # -----------------------------------------------------------------------

    def to_rule(self, draft: RuleDraft) -> RuleIntent:
        """Turn the draft into a rule, filters becoming operator arguments."""
        parts = {}
        for role, stage in draft.stages.items():
            args = stage.intent.args + tuple(
                Argument(
                    name=predicate.field,
                    operator=predicate.operator,
                    type=ArgumentType(predicate.value_type.value),
                    value=predicate.value,
                )
                for predicate in stage.filters
            )
            parts[role.value] = stage.intent.model_copy(update={"args": args})
        return RuleIntent(**parts)
