"""
Program Compiler - Turns a resolved Program into text.

Two renderings of the same Program:

1. ``summarize`` / ``confirmation``: the English description shown before
   the user says yes, e.g.

       Ok, so you want me to get an Xkcd comic then tweet link. Is that right?

2. ``compile``: the program text handed to the loader, e.g.

       AlmondGenerated() {
           now => @(type="xkcd",id="xkcd-1").get_comic() , v_title := title => notify;
       }

Grammar of one stage:

    @(type="<kind>",id="<device>").<function>(<param>=<value>, ...)
        [ , <field> <op> <literal>, ... , v_<field> := <field>, ... ]

Stages are chained with ``=>``. A program without a trigger starts with
``now =>`` unless its first stage is received from a contact. It ends with
the action followed by `` ;`` or, when there is no action, with
``=> notify;``. A remote query is replaced by a ``@remote.receive(...)``
source addressed to the contact, with a fresh flow token per compiled
program.
"""

import json
import logging
from dataclasses import dataclass
from typing import List, Optional

from almond.dialog.errors import IncompleteProgramError
from almond.dialog.schemas import (
    EventRef,
    LiteralValue,
    Program,
    Stage,
    Value,
    VariableRef,
    display_value,
)
from almond.dialog.thingpedia import FunctionRole, ValueType, words
from almond.services.app_loader import RemoteAddress
from almond.services.flow_token import TokenGenerator, generate_flow_token


logger = logging.getLogger("almond.dialog.compiler")


@dataclass(frozen=True)
class CompiledProgram:
    """Program text plus, for delegated programs, where to send it."""
    code: str
    remote: Optional[RemoteAddress] = None


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _literal_code(value_type: ValueType, value) -> str:
    if value_type is ValueType.NUMBER:
        return display_value(value)
    if value_type is ValueType.BOOLEAN:
        return display_value(bool(value))
    return _quote(str(value))


class ProgramCompiler:
    """
    Renders confirmations and program text.

    Args:
        token_generator: Source of flow tokens for remote programs
    """

    def __init__(self, token_generator: Optional[TokenGenerator] = None):
        self.token_generator = token_generator or generate_flow_token

    # -----------------------------------------------------------------------
    # DESCRIPTIONS
    # -----------------------------------------------------------------------

    @staticmethod
    def describe_value(value: Value) -> str:
        if isinstance(value, VariableRef):
            return words(value.field)
        if isinstance(value, EventRef):
            return "the result"
        if value.type in (ValueType.NUMBER, ValueType.BOOLEAN):
            return display_value(value.value)
        return f'"{value.value}"'

    def describe_stage(self, stage: Stage, include_remote: bool = True) -> str:
        """
        Describe one stage from its confirmation template.

        ``$param`` placeholders are replaced by the parameter's value; filled
        parameters the template does not mention are appended.
        """
        text = stage.schema.confirmation
        extra = []
        for spec in stage.schema.params:
            value = stage.args.get(spec.name)
            if value is None:
                continue
            placeholder = f"${spec.name}"
            if placeholder in text:
                text = text.replace(placeholder, self.describe_value(value))
            else:
                extra.append(f"{words(spec.name)} is {self.describe_value(value)}")
        if extra:
            text = " and ".join([text] + extra)

        if stage.role is FunctionRole.QUERY:
            text = f"get {text}"
        if include_remote and stage.remote is not None:
            text = f"{text} using Almond of {stage.remote.name}"
        if stage.filters:
            text = f"{text} if " + " and ".join(p.describe() for p in stage.filters)
        return text

    def summarize(self, program: Program) -> str:
        """
        Describe the whole program: ``<queries> then <action> when <trigger>``.
        """
        steps = [self.describe_stage(stage) for stage in program.queries]
        if program.action is not None:
            steps.append(self.describe_stage(program.action))
        body = " then ".join(steps) if steps else "notify you"
        if program.trigger is not None:
            return f"{body} when {self.describe_stage(program.trigger)}"
        return body

    def confirmation(self, program: Program) -> str:
        return f"Ok, so you want me to {self.summarize(program)}. Is that right?"

    def remote_summary(self, program: Program) -> str:
        """What the contact's assistant is asked to do."""
        stage = program.remote_stage
        if stage is None:
            return ""
        return f"{self.describe_stage(stage, include_remote=False)} then send it to me"

    # -----------------------------------------------------------------------
    # PROGRAM TEXT
    # -----------------------------------------------------------------------

    @staticmethod
    def value_code(value: Value) -> str:
        if isinstance(value, VariableRef):
            return value.variable
        if isinstance(value, EventRef):
            return "$event"
        if isinstance(value, LiteralValue):
            return _literal_code(value.type, value.value)
        raise IncompleteProgramError(f"Cannot compile value {value!r}")

    def _call_code(self, stage: Stage, token: Optional[str]) -> str:
        if stage.remote is not None:
            contact = stage.remote
            return (
                f"@remote.receive(__principal={_quote(contact.principal)}^^tt:contact({_quote(contact.name)}), "
                f"__token={_quote(token)}^^tt:flow_token, "
                f"__kindChannel=\"{stage.role.value}:{stage.kind}:{stage.channel}\"^^tt:function)"
            )
        args = ", ".join(
            f"{spec.name}={self.value_code(stage.args[spec.name])}" for spec in stage.schema.params
        )
        return f'@(type="{stage.kind}",id="{stage.device.id}").{stage.channel}({args})'

    def _stage_code(self, stage: Stage, token: Optional[str]) -> str:
        items = [
            f"{p.field} {p.operator.symbol} {_literal_code(p.value_type, p.value)}"
            for p in stage.filters
        ]
        items += [f"{b.variable} := {b.field}" for b in stage.output_bindings]
        code = self._call_code(stage, token)
        if items:
            code = f"{code} , " + ", ".join(items)
        return code

    def _check(self, program: Program) -> None:
        if program.is_empty:
            raise IncompleteProgramError("Cannot compile an empty program")
        for stage in program.stages:
            missing = stage.missing_params()
            if missing:
                raise IncompleteProgramError(
                    f"{stage.schema.function_id} has unfilled slots: {', '.join(missing)}"
                )
            if stage.device is None and stage.remote is None:
                raise IncompleteProgramError(f"{stage.schema.function_id} has no device")

    def compile(self, program: Program) -> CompiledProgram:
        """
        Serialize a fully resolved program.

        Raises:
            IncompleteProgramError: If any stage is not fully resolved
        """
        self._check(program)

        remote_stage = program.remote_stage
        address = None
        token = None
        if remote_stage is not None:
            token = self.token_generator()
            address = RemoteAddress(
                contact=remote_stage.remote,
                token=token,
                kind_channel=f"{remote_stage.role.value}:{remote_stage.kind}:{remote_stage.channel}",
            )

        segments: List[str] = [self._stage_code(stage, token) for stage in program.stages]
        # a remote receive is itself the source of the chain
        if program.trigger is None and not program.stages[0].is_remote:
            segments.insert(0, "now")
        if program.action is not None:
            body = " => ".join(segments) + " ;"
        else:
            body = " => ".join(segments + ["notify"]) + ";"

        code = f"AlmondGenerated() {{\n    {body}\n}}"
        logger.debug(f"Compiled program: {body}")
        return CompiledProgram(code=code, remote=address)
