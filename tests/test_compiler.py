"""
Tests for the program compiler.

Tests for:
- Program text for query-only, action and trigger programs
- Filters, bindings and duplicate variable names
- Remote receive sources and flow tokens
- Refusal to compile incomplete programs
- Confirmation texts
"""

import pytest

from almond.dialog.compiler import ProgramCompiler
from almond.dialog.errors import IncompleteProgramError
from almond.dialog.schemas import (
    Contact,
    DeviceDescriptor,
    EventRef,
    LiteralValue,
    ParamSlot,
    Predicate,
    Program,
    Stage,
    StageDraft,
    VariableRef,
)
from almond.dialog.thingpedia import FilterOperator, ValueType, function_registry
from almond.services.flow_token import fixed_token, generate_flow_token


XKCD = DeviceDescriptor(kind="xkcd", id="xkcd-1", label="Xkcd")
TWITTER = DeviceDescriptor(kind="twitter", id="twitter-foo", label="Twitter Account foo")
MOM = Contact(principal="mock-account:MOCK1234-phone:+1800666", name="Mom Corp Inc.")


def add_stage(program, function_id, device=None, remote=None, filters=(), **args):
    """Resolve a stage the way the dialog does and append it."""
    schema = function_registry.get(function_id)
    slots = []
    for spec in schema.params:
        slot = ParamSlot(name=spec.name, declared_type=spec.type)
        if spec.name in args:
            slot.fill(args[spec.name])
        slots.append(slot)
    draft = StageDraft(role=schema.role, schema=schema, slots=slots, filters=list(filters),
                       device=device, remote=remote)
    stage = draft.to_stage(program)
    program.append(stage)
    return stage


@pytest.fixture
def compiler():
    return ProgramCompiler(token_generator=fixed_token("XXX"))


# ===========================================================================
# PROGRAM TEXT
# ===========================================================================

class TestProgramText:
    """Tests for compile()."""

    def test_query_only(self, compiler):
        """A query without action notifies."""
        program = Program()
        add_stage(program, "tt:xkcd.get_comic", device=XKCD)

        compiled = compiler.compile(program)

        assert compiled.code == (
            "AlmondGenerated() {\n"
            '    now => @(type="xkcd",id="xkcd-1").get_comic() , '
            "v_number := number, v_title := title, v_picture_url := picture_url, v_link := link => notify;\n"
            "}"
        )
        assert compiled.remote is None

    def test_query_then_action(self, compiler):
        program = Program()
        add_stage(program, "tt:xkcd.get_comic", device=XKCD)
        add_stage(program, "tt:twitter.post_picture", device=TWITTER,
                  caption=VariableRef(field="link", variable="v_link"),
                  picture_url=VariableRef(field="picture_url", variable="v_picture_url"))

        code = compiler.compile(program).code

        assert code.endswith(
            '=> @(type="twitter",id="twitter-foo").post_picture(caption=v_link, picture_url=v_picture_url) ;\n}'
        )

    def test_trigger_has_no_now(self, compiler):
        program = Program()
        add_stage(program, "tt:twitter.source", device=TWITTER)
        add_stage(program, "tt:twitter.sink", device=TWITTER, status=EventRef())

        code = compiler.compile(program).code

        assert code.startswith('AlmondGenerated() {\n    @(type="twitter",id="twitter-foo").source() , v_text := text')
        assert "sink(status=$event) ;" in code

    def test_literals(self, compiler):
        program = Program()
        add_stage(program, "tt:facebook.post", device=DeviceDescriptor(kind="facebook", id="facebook-6", label="Facebook"),
                  status=LiteralValue(ValueType.STRING, 'say "hi"'))

        code = compiler.compile(program).code

        assert 'post(status="say \\"hi\\"") ;' in code

    def test_filters_before_bindings(self, compiler):
        program = Program()
        add_stage(program, "tt:xkcd.get_comic", device=XKCD, filters=[
            Predicate(field="title", operator=FilterOperator.CONTAINS, value="lol"),
            Predicate(field="number", operator=FilterOperator.GREATER, value=100.0,
                      value_type=ValueType.NUMBER),
        ])

        code = compiler.compile(program).code

        assert 'get_comic() , title =~ "lol", number > 100, v_number := number' in code

    def test_duplicate_variables(self, compiler):
        """Test a second stage exposing the same field gets a suffixed variable."""
        program = Program()
        add_stage(program, "tt:xkcd.get_comic", device=XKCD)
        second = add_stage(program, "tt:xkcd.get_comic", device=XKCD)

        assert second.output_bindings[0].variable == "v_number_2"
        assert "v_number_2 := number" in compiler.compile(program).code

    def test_deterministic(self, compiler):
        program = Program()
        add_stage(program, "tt:xkcd.get_comic", device=XKCD)

        assert compiler.compile(program).code == compiler.compile(program).code


# ===========================================================================
# REMOTE PROGRAMS
# ===========================================================================

class TestRemote:
    """Tests for stages run by a contact."""

    def test_remote_query_source(self, compiler):
        program = Program()
        add_stage(program, "tt:xkcd.get_comic", remote=MOM)

        compiled = compiler.compile(program)

        assert compiled.code.startswith(
            "AlmondGenerated() {\n"
            '    @remote.receive(__principal="mock-account:MOCK1234-phone:+1800666"^^tt:contact("Mom Corp Inc."), '
            '__token="XXX"^^tt:flow_token, __kindChannel="query:xkcd:get_comic"^^tt:function) , v_number := number'
        )
        assert compiled.remote.contact == MOM
        assert compiled.remote.token == "XXX"
        assert compiled.remote.kind_channel == "query:xkcd:get_comic"

    def test_fresh_token_per_compile(self):
        tokens = iter(["first", "second"])
        compiler = ProgramCompiler(token_generator=lambda: next(tokens))
        program = Program()
        add_stage(program, "tt:xkcd.get_comic", remote=MOM)

        assert compiler.compile(program).remote.token == "first"
        assert compiler.compile(program).remote.token == "second"


# ===========================================================================
# INCOMPLETE PROGRAMS
# ===========================================================================

class TestIncomplete:
    """Tests for programs that cannot be compiled."""

    def test_empty(self, compiler):
        with pytest.raises(IncompleteProgramError):
            compiler.compile(Program())

    def test_missing_param(self, compiler):
        schema = function_registry.get("tt:twitter.sink")
        program = Program(stages=[Stage(role=schema.role, schema=schema, device=TWITTER)])

        with pytest.raises(IncompleteProgramError):
            compiler.compile(program)

    def test_missing_device(self, compiler):
        schema = function_registry.get("tt:xkcd.get_comic")
        program = Program(stages=[Stage(role=schema.role, schema=schema, device=None)])

        with pytest.raises(IncompleteProgramError):
            compiler.compile(program)

    def test_unfilled_draft(self):
        """Test a draft with an unfilled slot never becomes a stage."""
        schema = function_registry.get("tt:twitter.sink")
        draft = StageDraft(role=schema.role, schema=schema,
                           slots=[ParamSlot(name="status", declared_type=ValueType.STRING)])

        with pytest.raises(IncompleteProgramError):
            draft.to_stage(Program())


# ===========================================================================
# CONFIRMATIONS
# ===========================================================================

class TestConfirmation:
    """Tests for the English rendering."""

    def test_query_then_action(self, compiler):
        program = Program()
        add_stage(program, "tt:xkcd.get_comic", device=XKCD)
        add_stage(program, "tt:twitter.post_picture", device=TWITTER,
                  caption=VariableRef(field="link", variable="v_link"),
                  picture_url=VariableRef(field="picture_url", variable="v_picture_url"))

        assert compiler.confirmation(program) == (
            "Ok, so you want me to get an Xkcd comic then tweet link with an attached picture "
            "and picture url is picture url. Is that right?"
        )

    def test_trigger_goes_last(self, compiler):
        program = Program()
        add_stage(program, "tt:twitter.source", device=TWITTER)
        add_stage(program, "tt:facebook.post", device=DeviceDescriptor(kind="facebook", id="facebook-6", label="Facebook"),
                  status=VariableRef(field="text", variable="v_text"))

        assert compiler.summarize(program) == "post text on Facebook when anyone you follow tweets"

    def test_filters_and_remote(self, compiler):
        program = Program()
        add_stage(program, "tt:xkcd.get_comic", remote=MOM, filters=[
            Predicate(field="title", operator=FilterOperator.CONTAINS, value="lol"),
        ])

        assert compiler.summarize(program) == "get an Xkcd comic using Almond of Mom Corp Inc. if title contains lol"
        assert compiler.remote_summary(program) == "get an Xkcd comic if title contains lol then send it to me"


class TestFlowToken:
    """Tests for generated flow tokens."""

    def test_hex_of_requested_size(self):
        token = generate_flow_token(8)

        assert len(token) == 16
        int(token, 16)

    def test_tokens_differ(self):
        assert generate_flow_token() != generate_flow_token()
