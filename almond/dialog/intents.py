"""
Intent Schemas - Pydantic models for every intent the dialog accepts.

Intents arrive either from the upstream semantic parser or straight from
the client (buttons echo their payload back verbatim). On the wire an intent
is a JSON object with exactly one top-level key:

    {"special": "help"}
    {"special": {"id": "tt:root.special.makerule"}}
    {"query": {"name": {"id": "tt:xkcd.get_comic"}, "person": "mom", "args": []}}
    {"rule": {"trigger": {...}, "query": {...}, "action": {...}}}
    {"answer": {"type": "Choice", "value": 0}}
    {"answer": {"type": "String", "value": {"value": "lol"}}}
    {"filter": {"type": "String", "operator": "contains", "name": "title", "value": null}}
    {"command": {"type": "help", "value": {"id": "tt:type.media"}}}

``parse_intent`` turns that into one of the frozen models below, so every
dispatch point can match on a closed set of classes instead of poking at
dictionaries.
"""

import json
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from almond.dialog.errors import MalformedIntentError
from almond.dialog.thingpedia import FilterOperator, ValueType, split_function_id


SPECIAL_PREFIX = "tt:root.special."
PARAM_PREFIX = "tt:param."
TYPE_PREFIX = "tt:type."


# ---------------------------------------------------------------------------
# ENUMS
# ---------------------------------------------------------------------------

class SpecialName(str, Enum):
    """Out-of-band control words."""
    HELP = "help"
    MAKERULE = "makerule"
    NEVERMIND = "nevermind"
    YES = "yes"
    NO = "no"
    BACK = "back"
    EMPTY = "empty"


class AnswerType(str, Enum):
    """Shapes an answer to a prompt can take."""
    CHOICE = "Choice"
    STRING = "String"
    NUMBER = "Number"
    PICTURE = "Picture"
    BOOLEAN = "Boolean"


class ArgumentType(str, Enum):
    """Value types an explicit argument can carry."""
    STRING = "String"
    NUMBER = "Number"
    BOOLEAN = "Boolean"
    PICTURE = "Picture"
    URL = "URL"
    VAR_REF = "VarRef"


# ---------------------------------------------------------------------------
# INTENT MODELS
# ---------------------------------------------------------------------------

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class Argument(_Frozen):
    """
    One argument of a trigger/query/action intent.

    With operator ``is`` on an input parameter it is an explicit value; on an
    output field, or with any other operator, it is a filter.
    """
    name: str
    operator: FilterOperator = FilterOperator.IS
    type: ArgumentType
    value: Any = None

    def to_wire(self) -> Dict[str, Any]:
        if self.type is ArgumentType.VAR_REF:
            value: Any = {"id": PARAM_PREFIX + str(self.value)}
        else:
            value = {"value": self.value}
        return {
            "name": {"id": PARAM_PREFIX + self.name},
            "operator": self.operator.value,
            "type": self.type.value,
            "value": value,
        }


class SpecialIntent(_Frozen):
    """Control word such as help, yes, no or nevermind."""
    name: SpecialName

    def to_wire(self) -> Dict[str, Any]:
        return {"special": SPECIAL_PREFIX + self.name.value}


class FunctionIntent(_Frozen):
    """Common shape of trigger, query and action intents."""
    function_id: str
    args: Tuple[Argument, ...] = ()

    @property
    def kind(self) -> str:
        return split_function_id(self.function_id)[0]

    @property
    def channel(self) -> str:
        return split_function_id(self.function_id)[1]

    def _wire_body(self) -> Dict[str, Any]:
        return {
            "name": {"id": self.function_id},
            "args": [arg.to_wire() for arg in self.args],
        }


class TriggerIntent(FunctionIntent):
    """Event source that starts a rule."""

    def to_wire(self) -> Dict[str, Any]:
        return {"trigger": self._wire_body()}


class QueryIntent(FunctionIntent):
    """
    Data retrieval step.

    ``person`` names a contact whose own assistant should run the query.
    """
    person: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        body = self._wire_body()
        if self.person is not None:
            body["person"] = self.person
        return {"query": body}


class ActionIntent(FunctionIntent):
    """Side-effecting step that ends a rule."""

    def to_wire(self) -> Dict[str, Any]:
        return {"action": self._wire_body()}


class RuleIntent(_Frozen):
    """Sugar for adding a whole trigger/query/action chain at once."""
    trigger: Optional[TriggerIntent] = None
    query: Optional[QueryIntent] = None
    action: Optional[ActionIntent] = None

    @model_validator(mode="after")
    def _not_empty(self) -> "RuleIntent":
        if self.trigger is None and self.query is None and self.action is None:
            raise ValueError("rule needs at least one of trigger, query, action")
        return self

    def parts(self) -> List[FunctionIntent]:
        """The populated parts in execution order."""
        return [part for part in (self.trigger, self.query, self.action) if part is not None]

    def to_wire(self) -> Dict[str, Any]:
        body = {}
        for key, part in (("trigger", self.trigger), ("query", self.query), ("action", self.action)):
            if part is not None:
                body[key] = part.to_wire()[key]
        return {"rule": body}


class AnswerIntent(_Frozen):
    """Answer to the question currently on screen."""
    type: AnswerType
    value: Any = None

    def to_wire(self) -> Dict[str, Any]:
        value = self.value if self.type is AnswerType.CHOICE else {"value": self.value}
        return {"answer": {"type": self.type.value, "value": value}}


class FilterIntent(_Frozen):
    """A (field, operator, value) predicate picked in the filter builder."""
    value_type: ValueType
    operator: FilterOperator
    field: str
    value: Any = None

    def to_wire(self) -> Dict[str, Any]:
        return {"filter": {
            "type": self.value_type.value,
            "operator": self.operator.value,
            "name": self.field,
            "value": self.value,
        }}


class CommandIntent(_Frozen):
    """Builder navigation, e.g. listing the functions of a category."""
    type: str
    value: str

    def to_wire(self) -> Dict[str, Any]:
        return {"command": {"type": self.type, "value": {"id": TYPE_PREFIX + self.value}}}


Intent = Union[
    SpecialIntent,
    TriggerIntent,
    QueryIntent,
    ActionIntent,
    RuleIntent,
    AnswerIntent,
    FilterIntent,
    CommandIntent,
]

COMMAND_INTENTS = (TriggerIntent, QueryIntent, ActionIntent, RuleIntent)


# ---------------------------------------------------------------------------
# WIRE PARSING
# ---------------------------------------------------------------------------

_TOP_LEVEL_KEYS = ("special", "rule", "trigger", "query", "action", "answer", "filter", "command")


def _strip(value: str, prefix: str) -> str:
    return value[len(prefix):] if value.startswith(prefix) else value


def _id_of(raw: Any, prefix: str, what: str) -> str:
    """Read ``"x"`` or ``{"id": "x"}`` and strip a namespace prefix."""
    if isinstance(raw, dict):
        raw = raw.get("id")
    if not isinstance(raw, str) or not raw:
        raise MalformedIntentError(f"Missing {what}")
    return _strip(raw, prefix)


def _unwrap(raw: Any) -> Any:
    """Read a value that may be wrapped as ``{"value": x}``."""
    if isinstance(raw, dict) and "value" in raw:
        return raw["value"]
    return raw


def _parse_argument(raw: Any) -> Argument:
    if not isinstance(raw, dict):
        raise MalformedIntentError(f"Invalid argument: {raw!r}")
    arg_type = ArgumentType(raw.get("type", "String"))
    if arg_type is ArgumentType.VAR_REF:
        value = _id_of(raw.get("value"), PARAM_PREFIX, "variable reference")
    else:
        value = _unwrap(raw.get("value"))
    return Argument(
        name=_id_of(raw.get("name"), PARAM_PREFIX, "argument name"),
        operator=FilterOperator(raw.get("operator") or "is"),
        type=arg_type,
        value=value,
    )


def _parse_function(raw: Any, cls: type) -> FunctionIntent:
    if not isinstance(raw, dict):
        raise MalformedIntentError(f"Invalid {cls.__name__}: {raw!r}")
    function_id = _id_of(raw.get("name"), "", "function name")
    split_function_id(function_id)
    fields: Dict[str, Any] = {
        "function_id": function_id,
        "args": tuple(_parse_argument(arg) for arg in raw.get("args") or []),
    }
    if cls is QueryIntent and raw.get("person"):
        fields["person"] = raw["person"]
    return cls(**fields)


def _parse_body(key: str, body: Any) -> Intent:
    if key == "special":
        return SpecialIntent(name=SpecialName(_id_of(body, SPECIAL_PREFIX, "special name")))
    if key == "trigger":
        return _parse_function(body, TriggerIntent)
    if key == "query":
        return _parse_function(body, QueryIntent)
    if key == "action":
        return _parse_function(body, ActionIntent)
    if key == "rule":
        if not isinstance(body, dict):
            raise MalformedIntentError("Invalid rule")
        return RuleIntent(
            trigger=_parse_function(body["trigger"], TriggerIntent) if body.get("trigger") else None,
            query=_parse_function(body["query"], QueryIntent) if body.get("query") else None,
            action=_parse_function(body["action"], ActionIntent) if body.get("action") else None,
        )
    if key == "answer":
        if not isinstance(body, dict) or "type" not in body:
            raise MalformedIntentError("Answer without a type")
        answer_type = AnswerType(body["type"])
        value = body.get("value")
        if answer_type is not AnswerType.CHOICE:
            value = _unwrap(value)
        return AnswerIntent(type=answer_type, value=value)
    if key == "filter":
        if not isinstance(body, dict):
            raise MalformedIntentError("Invalid filter")
        return FilterIntent(
            value_type=ValueType(body.get("type")),
            operator=FilterOperator(body.get("operator")),
            field=_id_of(body.get("name"), PARAM_PREFIX, "filter field"),
            value=_unwrap(body.get("value")),
        )
    # command
    if not isinstance(body, dict):
        raise MalformedIntentError("Invalid command")
    return CommandIntent(
        type=str(body.get("type") or ""),
        value=_id_of(body.get("value"), TYPE_PREFIX, "command value"),
    )


def parse_intent(payload: Union[str, bytes, Dict[str, Any]]) -> Intent:
    """
    Parse a wire intent into its model.

    Args:
        payload: JSON text or an already decoded dict

    Returns:
        The matching intent model

    Raises:
        MalformedIntentError: If the payload is not exactly one known intent
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise MalformedIntentError(f"Invalid intent JSON: {e}")
    if not isinstance(payload, dict):
        raise MalformedIntentError("Intent must be a JSON object")

    keys = [key for key in _TOP_LEVEL_KEYS if payload.get(key) is not None]
    if len(keys) != 1:
        raise MalformedIntentError(f"Intent must have exactly one of {', '.join(_TOP_LEVEL_KEYS)}")

    key = keys[0]
    try:
        return _parse_body(key, payload[key])
    except MalformedIntentError:
        raise
    except (ValidationError, ValueError, KeyError, TypeError) as e:
        raise MalformedIntentError(f"Invalid {key} intent: {e}")


def intent_to_json(intent: Intent) -> str:
    """Serialize an intent to the compact wire form used in button payloads."""
    return json.dumps(intent.to_wire(), separators=(",", ":"))
