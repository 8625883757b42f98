"""
Thingpedia - Function catalog for every kind of device the dialog knows.

This module is the single source of truth for what a device function looks
like: its role (trigger, query or action), the input parameters it needs,
the output fields it exposes to later stages, and the text used to describe
it to the user.

Purpose:
========
1. Parameter lists for slot filling (declaration order matters)
2. Output fields for bindings and filters
3. Confirmation templates and canonical labels for summaries
4. Categories for the guided "When / Get / Do" builder

Usage:
======
```python
from almond.dialog.thingpedia import function_registry

schema = function_registry.get("tt:twitter.post_picture")
schema.params        # [ParamSpec(caption, String), ParamSpec(picture_url, Picture)]
schema.outputs       # []
```
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from almond.dialog.errors import MalformedIntentError


logger = logging.getLogger("almond.dialog.thingpedia")


# ---------------------------------------------------------------------------
# VALUE TYPES
# ---------------------------------------------------------------------------

class ValueType(str, Enum):
    """Declared type of a parameter or output field."""
    STRING = "String"
    NUMBER = "Number"
    BOOLEAN = "Boolean"
    DATE = "Date"
    PICTURE = "Picture"
    URL = "URL"
    ENTITY = "Entity"
    ARRAY = "Array"

    @property
    def is_numeric(self) -> bool:
        return self is ValueType.NUMBER

    @property
    def is_textual(self) -> bool:
        return self is ValueType.STRING


# Output types a String parameter can be bound to
_STRING_COMPATIBLE = {
    ValueType.STRING,
    ValueType.PICTURE,
    ValueType.URL,
    ValueType.ENTITY,
}


def accepts(param_type: ValueType, output_type: ValueType) -> bool:
    """
    Check whether an output field can be bound to a parameter.

    Args:
        param_type: Declared type of the parameter being filled
        output_type: Declared type of an earlier stage's output field

    Returns:
        True if the output can be used as the parameter's value
    """
    if param_type is ValueType.STRING:
        return output_type in _STRING_COMPATIBLE
    return param_type is output_type


def words(name: str) -> str:
    """Turn an identifier like ``picture_url`` into ``picture url``."""
    return name.replace("_", " ")


# ---------------------------------------------------------------------------
# FILTER OPERATORS
# ---------------------------------------------------------------------------

class FilterOperator(str, Enum):
    """Comparison operators a filter can use."""
    IS = "is"
    LESS = "<"
    GREATER = ">"
    CONTAINS = "contains"

    @property
    def symbol(self) -> str:
        """Operator as written in program text."""
        return {
            FilterOperator.IS: "=",
            FilterOperator.LESS: "<",
            FilterOperator.GREATER: ">",
            FilterOperator.CONTAINS: "=~",
        }[self]


def operators_for(value_type: ValueType) -> List[FilterOperator]:
    """
    Operators offered for a field of the given type.

    Numeric fields compare by value, textual fields by equality or
    substring. Other types cannot be filtered.
    """
    if value_type.is_numeric:
        return [FilterOperator.IS, FilterOperator.LESS, FilterOperator.GREATER]
    if value_type.is_textual:
        return [FilterOperator.IS, FilterOperator.CONTAINS]
    return []


# ---------------------------------------------------------------------------
# FUNCTION ROLES
# ---------------------------------------------------------------------------

class FunctionRole(str, Enum):
    """Where a function can appear in a rule."""
    TRIGGER = "trigger"
    QUERY = "query"
    ACTION = "action"

    @property
    def builder_label(self) -> str:
        return {
            FunctionRole.TRIGGER: "When",
            FunctionRole.QUERY: "Get",
            FunctionRole.ACTION: "Do",
        }[self]


# ---------------------------------------------------------------------------
# CATEGORIES
# ---------------------------------------------------------------------------

# (category id, display name) in the order the builder shows them
CATEGORIES: List[Tuple[str, str]] = [
    ("media", "Media"),
    ("social-network", "Social Networks"),
    ("home", "Home"),
    ("communication", "Communication"),
    ("health", "Health and Fitness"),
    ("service", "Services"),
    ("data-management", "Data Management"),
]


# ---------------------------------------------------------------------------
# FUNCTION DEFINITIONS
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParamSpec:
    """
    A declared input parameter or output field.

    Attributes:
        name: Parameter name as used in program text
        type: Declared value type
        question: Prompt used by the slot filler (input parameters only)
    """
    name: str
    type: ValueType
    question: Optional[str] = None


@dataclass(frozen=True)
class KindInfo:
    """Display metadata for a device kind."""
    kind: str
    name: str
    category: str


@dataclass(frozen=True)
class FunctionSchema:
    """
    Definition of one device function.

    Attributes:
        kind: Device kind (e.g. "twitter")
        name: Function name within the kind (e.g. "post_picture")
        role: Trigger, query or action
        params: Input parameters, in declaration order
        outputs: Output fields, in declaration order
        confirmation: Description template, ``$param`` is substituted
        canonical: Short label used by the rule builder
    """
    kind: str
    name: str
    role: FunctionRole
    params: Tuple[ParamSpec, ...] = ()
    outputs: Tuple[ParamSpec, ...] = ()
    confirmation: str = ""
    canonical: str = ""

    @property
    def function_id(self) -> str:
        return f"tt:{self.kind}.{self.name}"

    def param(self, name: str) -> Optional[ParamSpec]:
        for spec in self.params:
            if spec.name == name:
                return spec
        return None

    def output(self, name: str) -> Optional[ParamSpec]:
        for spec in self.outputs:
            if spec.name == name:
                return spec
        return None


def split_function_id(function_id: str) -> Tuple[str, str]:
    """
    Split ``tt:<kind>.<function>`` into its kind and function name.

    Raises:
        MalformedIntentError: If the id is not dotted
    """
    bare = function_id[3:] if function_id.startswith("tt:") else function_id
    kind, sep, name = bare.rpartition(".")
    if not sep or not kind or not name:
        raise MalformedIntentError(f"Invalid function id: {function_id!r}")
    return kind, name


# ---------------------------------------------------------------------------
# FUNCTION REGISTRY
# ---------------------------------------------------------------------------

class FunctionRegistry:
    """
    Registry of every device kind and function the dialog can use.

    The built-in catalog is registered at construction time; more kinds can
    be added with ``register_kind`` and ``register``.
    """

    def __init__(self, builtins: bool = True):
        self._kinds: Dict[str, KindInfo] = {}
        self._functions: Dict[Tuple[str, str], FunctionSchema] = {}
        if builtins:
            self._register_builtin_functions()
        logger.info(f"Function registry initialized with {len(self._functions)} functions")

    def _register_builtin_functions(self):
        """Register the built-in catalog."""

        # -----------------------------------------------------------------------
        # XKCD
        # -----------------------------------------------------------------------
        self.register_kind(KindInfo(kind="xkcd", name="Xkcd", category="media"))
        self.register(FunctionSchema(
            kind="xkcd",
            name="get_comic",
            role=FunctionRole.QUERY,
            outputs=(
                ParamSpec("number", ValueType.NUMBER),
                ParamSpec("title", ValueType.STRING),
                ParamSpec("picture_url", ValueType.PICTURE),
                ParamSpec("link", ValueType.URL),
            ),
            confirmation="an Xkcd comic",
            canonical="comic on xkcd",
        ))

        # -----------------------------------------------------------------------
        # TWITTER
        # -----------------------------------------------------------------------
        self.register_kind(KindInfo(kind="twitter", name="Twitter", category="social-network"))
        self.register(FunctionSchema(
            kind="twitter",
            name="source",
            role=FunctionRole.TRIGGER,
            outputs=(
                ParamSpec("text", ValueType.STRING),
                ParamSpec("hashtags", ValueType.ARRAY),
                ParamSpec("urls", ValueType.ARRAY),
                ParamSpec("from", ValueType.ENTITY),
                ParamSpec("in_reply_to", ValueType.ENTITY),
            ),
            confirmation="anyone you follow tweets",
            canonical="tweet on twitter",
        ))
        self.register(FunctionSchema(
            kind="twitter",
            name="sink",
            role=FunctionRole.ACTION,
            params=(
                ParamSpec("status", ValueType.STRING, "What do you want to tweet?"),
            ),
            confirmation="tweet $status",
            canonical="tweet on twitter",
        ))
        self.register(FunctionSchema(
            kind="twitter",
            name="post_picture",
            role=FunctionRole.ACTION,
            params=(
                ParamSpec("caption", ValueType.STRING, "What do you want to tweet?"),
                ParamSpec("picture_url", ValueType.PICTURE),
            ),
            confirmation="tweet $caption with an attached picture",
            canonical="tweet picture on twitter",
        ))

        # -----------------------------------------------------------------------
        # FACEBOOK
        # -----------------------------------------------------------------------
        self.register_kind(KindInfo(kind="facebook", name="Facebook", category="social-network"))
        self.register(FunctionSchema(
            kind="facebook",
            name="post",
            role=FunctionRole.ACTION,
            params=(
                ParamSpec("status", ValueType.STRING, "What do you want to post?"),
            ),
            confirmation="post $status on Facebook",
            canonical="post on facebook",
        ))

        # -----------------------------------------------------------------------
        # SECURITY CAMERA
        # -----------------------------------------------------------------------
        self.register_kind(KindInfo(kind="security-camera", name="Security Camera", category="home"))
        self.register(FunctionSchema(
            kind="security-camera",
            name="new_event",
            role=FunctionRole.TRIGGER,
            outputs=(
                ParamSpec("start_time", ValueType.DATE),
                ParamSpec("has_sound", ValueType.BOOLEAN),
                ParamSpec("has_motion", ValueType.BOOLEAN),
                ParamSpec("has_person", ValueType.BOOLEAN),
                ParamSpec("picture_url", ValueType.PICTURE),
            ),
            confirmation="any event is detected on your security camera",
            canonical="new event on security camera",
        ))

    def register_kind(self, info: KindInfo) -> None:
        """
        Register display metadata for a device kind.

        Args:
            info: KindInfo to register
        """
        self._kinds[info.kind] = info

    def register(self, schema: FunctionSchema) -> None:
        """
        Register a function in the registry.

        Args:
            schema: FunctionSchema to register
        """
        self._functions[(schema.kind, schema.name)] = schema
        logger.debug(f"Registered function: {schema.function_id}")

    def get(self, function_id: str) -> FunctionSchema:
        """
        Get a function by its dotted id.

        Args:
            function_id: ``tt:<kind>.<function>`` or ``<kind>.<function>``

        Returns:
            The FunctionSchema

        Raises:
            MalformedIntentError: If the function is not in the catalog
        """
        key = split_function_id(function_id)
        schema = self._functions.get(key)
        if schema is None:
            raise MalformedIntentError(f"Unknown function: {function_id}")
        return schema

    def has_function(self, function_id: str) -> bool:
        try:
            return split_function_id(function_id) in self._functions
        except MalformedIntentError:
            return False

    def kind_info(self, kind: str) -> KindInfo:
        """Get display metadata for a kind, falling back to the kind itself."""
        info = self._kinds.get(kind)
        if info is None:
            return KindInfo(kind=kind, name=kind.replace("-", " ").title(), category="service")
        return info

    def list_functions(
        self,
        category: Optional[str] = None,
        role: Optional[FunctionRole] = None,
    ) -> List[FunctionSchema]:
        """
        List functions, optionally filtered by category and role.

        Args:
            category: Category id (e.g. "media")
            role: Only functions usable in this position

        Returns:
            Matching functions in registration order
        """
        result = []
        for schema in self._functions.values():
            if category and self.kind_info(schema.kind).category != category:
                continue
            if role and schema.role != role:
                continue
            result.append(schema)
        return result


# ---------------------------------------------------------------------------
# SINGLETON INSTANCE
# ---------------------------------------------------------------------------

function_registry = FunctionRegistry()
