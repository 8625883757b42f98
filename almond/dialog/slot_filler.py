"""
Slot Filler - Asks for the parameters a stage still needs.

For every declared parameter of the current stage, in declaration order:

1. Explicit arguments from the intent are applied up front and never asked.
2. Otherwise the user gets one question with these options:
   - "Use the <field> from <kind>" for each compatible earlier output
   - "A description of the result" (String parameters only)
   - "None of above", which re-asks for a plain value
   With no options at all the question is asked plainly.
3. Typed answers (String, Number, Picture, ...) are always accepted as the
   literal value, whether options were shown or not.

Picture parameters are always asked as "Upload the picture now." and only
offer picture outputs.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Set

from almond.dialog.errors import MalformedIntentError, UnexpectedIntentError
from almond.dialog.intents import AnswerIntent, AnswerType, ArgumentType, FunctionIntent
from almond.dialog.schemas import (
    Binding,
    EventRef,
    LiteralValue,
    ParamSlot,
    Predicate,
    Program,
    StageDraft,
    VariableRef,
)
from almond.dialog.thingpedia import (
    FilterOperator,
    FunctionRole,
    FunctionSchema,
    ValueType,
    accepts,
    operators_for,
    words,
)
from almond.services.delegate import AskSpecial, OutputChannel


logger = logging.getLogger("almond.dialog.slot_filler")


PICTURE_QUESTION = "Upload the picture now."
NEED_NUMBER = "Sorry, I need a number."


# ---------------------------------------------------------------------------
# LITERALS
# ---------------------------------------------------------------------------

def coerce_literal(value_type: ValueType, raw: Any) -> LiteralValue:
    """
    Convert a raw answer or argument value to a literal of ``value_type``.

    Raises:
        ValueError: If the value cannot represent that type
    """
    if raw is None:
        raise ValueError("missing value")
    if value_type is ValueType.NUMBER:
        if isinstance(raw, bool):
            raise ValueError(f"not a number: {raw!r}")
        return LiteralValue(value_type, float(raw))
    if value_type is ValueType.BOOLEAN:
        if isinstance(raw, bool):
            return LiteralValue(value_type, raw)
        text = str(raw).strip().lower()
        if text in ("true", "yes", "on"):
            return LiteralValue(value_type, True)
        if text in ("false", "no", "off"):
            return LiteralValue(value_type, False)
        raise ValueError(f"not a boolean: {raw!r}")
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    return LiteralValue(value_type, str(raw))


# ---------------------------------------------------------------------------
# PROMPTS
# ---------------------------------------------------------------------------

class SlotOptionKind(str, Enum):
    BINDING = "binding"
    EVENT = "event"
    NONE = "none"


@dataclass(frozen=True)
class SlotOption:
    """One choice shown for a slot."""
    kind: SlotOptionKind
    label: str
    binding: Optional[Binding] = None


@dataclass
class SlotPrompt:
    """
    The question currently asked for one slot.

    Attributes:
        slot: Name of the parameter being filled
        question: Text shown to the user
        options: Choices, indexed by the answer; empty when asked plainly
    """
    slot: str
    question: str
    options: List[SlotOption] = field(default_factory=list)

    def plain(self) -> "SlotPrompt":
        return SlotPrompt(slot=self.slot, question=self.question)


class SlotFiller:
    """
    Drives the question/answer round trip for one stage's parameters.

    Usage:
        draft = filler.prepare(intent, FunctionRole.ACTION, schema, program)
        prompt = filler.next_prompt(draft, program)
        if prompt:
            filler.ask(prompt, channel)
            ...
            prompt = filler.answer(draft, prompt, answer, channel)
    """

    # -----------------------------------------------------------------------
    # EXPLICIT ARGUMENTS
    # -----------------------------------------------------------------------

    def prepare(
        self,
        intent: FunctionIntent,
        role: FunctionRole,
        schema: FunctionSchema,
        program: Program,
    ) -> StageDraft:
        """
        Build a draft stage, applying the intent's explicit arguments.

        Arguments naming an input parameter fill that slot. Arguments naming
        an output field become filters.

        Raises:
            MalformedIntentError: For unknown names, bad values or variable
                references to outputs no earlier stage exposes
        """
        draft = StageDraft(
            role=role,
            schema=schema,
            slots=[ParamSlot(name=spec.name, declared_type=spec.type, question=spec.question)
                   for spec in schema.params],
        )

        for arg in intent.args:
            param = schema.param(arg.name)
            output = schema.output(arg.name)

            if param is not None and arg.operator is FilterOperator.IS:
                slot = next(s for s in draft.slots if s.name == arg.name)
                if arg.type is ArgumentType.VAR_REF:
                    binding = program.lookup_binding(str(arg.value))
                    if binding is None:
                        raise MalformedIntentError(f"No earlier result has a field named {arg.value}")
                    slot.fill(VariableRef(field=binding.field, variable=binding.variable))
                else:
                    slot.fill(self._literal(param.type, arg.value, arg.name))
            elif output is not None:
                if arg.operator not in operators_for(output.type):
                    raise MalformedIntentError(f"Cannot filter {arg.name} with {arg.operator.value}")
                literal = self._literal(output.type, arg.value, arg.name)
                draft.filters.append(Predicate(
                    field=output.name,
                    operator=arg.operator,
                    value=literal.value,
                    value_type=output.type,
                ))
            else:
                raise MalformedIntentError(f"{schema.function_id} has no argument named {arg.name}")

        return draft

    def check(self, intent: FunctionIntent, schema: FunctionSchema, fields: Set[str]) -> None:
        """
        Validate explicit arguments before any stage of the intent is resolved.

        Args:
            intent: Trigger, query or action intent
            schema: Its catalog entry
            fields: Output fields a variable reference may name at this point

        Raises:
            MalformedIntentError: Same cases as ``prepare``
        """
        for arg in intent.args:
            param = schema.param(arg.name)
            output = schema.output(arg.name)

            if param is not None and arg.operator is FilterOperator.IS:
                if arg.type is ArgumentType.VAR_REF:
                    if str(arg.value) not in fields:
                        raise MalformedIntentError(f"No earlier result has a field named {arg.value}")
                else:
                    self._literal(param.type, arg.value, arg.name)
            elif output is not None:
                if arg.operator not in operators_for(output.type):
                    raise MalformedIntentError(f"Cannot filter {arg.name} with {arg.operator.value}")
                self._literal(output.type, arg.value, arg.name)
            else:
                raise MalformedIntentError(f"{schema.function_id} has no argument named {arg.name}")

    @staticmethod
    def _literal(value_type: ValueType, raw: Any, name: str) -> LiteralValue:
        try:
            return coerce_literal(value_type, raw)
        except (ValueError, TypeError) as e:
            raise MalformedIntentError(f"Invalid value for {name}: {e}")

    # -----------------------------------------------------------------------
    # QUESTIONS
    # -----------------------------------------------------------------------

    def next_prompt(self, draft: StageDraft, program: Program) -> Optional[SlotPrompt]:
        """
        Compute the question for the first unfilled slot.

        Returns:
            The prompt, or None when every slot is filled
        """
        slot = draft.next_unfilled()
        if slot is None:
            return None

        if slot.declared_type is ValueType.PICTURE:
            question = PICTURE_QUESTION
        else:
            question = slot.question or f"What is the value of {words(slot.name)}?"

        options = [
            SlotOption(
                kind=SlotOptionKind.BINDING,
                label=f"Use the {words(binding.field)} from {stage.kind}",
                binding=binding,
            )
            for stage, binding in program.available_bindings()
            if accepts(slot.declared_type, binding.type)
        ]
        if slot.declared_type is ValueType.STRING and not program.is_empty:
            options.append(SlotOption(kind=SlotOptionKind.EVENT, label="A description of the result"))
        if options:
            options.append(SlotOption(kind=SlotOptionKind.NONE, label="None of above"))

        return SlotPrompt(slot=slot.name, question=question, options=options)

    def ask(self, prompt: SlotPrompt, channel: OutputChannel) -> None:
        channel.send(prompt.question)
        channel.send_ask_special(AskSpecial.GENERIC)
        for index, option in enumerate(prompt.options):
            channel.send_choice(index, "slot", option.label, option.label)

    # -----------------------------------------------------------------------
    # ANSWERS
    # -----------------------------------------------------------------------

    def answer(
        self,
        draft: StageDraft,
        prompt: SlotPrompt,
        intent: AnswerIntent,
        channel: OutputChannel,
    ) -> Optional[SlotPrompt]:
        """
        Apply an answer to the slot ``prompt`` asked about.

        Returns:
            A follow-up prompt for the same slot (already asked), or None
            once the slot is filled

        Raises:
            MalformedIntentError: If a choice index was not offered
            UnexpectedIntentError: If a choice arrives for a plain question
        """
        slot = next(s for s in draft.slots if s.name == prompt.slot)

        if intent.type is AnswerType.CHOICE:
            if not prompt.options:
                raise UnexpectedIntentError("No choices are being offered")
            index = intent.value
            if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(prompt.options):
                raise MalformedIntentError(f"Invalid choice: {index!r}")
            option = prompt.options[index]

            if option.kind is SlotOptionKind.BINDING:
                slot.fill(VariableRef(field=option.binding.field, variable=option.binding.variable))
                return None
            if option.kind is SlotOptionKind.EVENT:
                slot.fill(EventRef())
                return None
            follow_up = prompt.plain()
            self.ask(follow_up, channel)
            return follow_up

        try:
            slot.fill(coerce_literal(slot.declared_type, intent.value))
        except (ValueError, TypeError):
            logger.warning(f"Rejected {intent.type.value} answer for {slot.name}: {intent.value!r}")
            channel.send(NEED_NUMBER if slot.declared_type is ValueType.NUMBER
                         else f"Sorry, that is not a valid value for {words(slot.name)}.")
            follow_up = prompt.plain()
            self.ask(follow_up, channel)
            return follow_up
        return None
