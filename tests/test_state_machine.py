"""
Tests for the dialog state machine.

These tests verify:
- Welcome message
- Cancellation from any state, and results discarded after a cancel
- Rejection of malformed or unexpected intents with the state unchanged
- Missing devices and unknown contacts reported to the user
- Loader and remote sender failures leave the session idle
- Raw utterances routed through the semantic parser
"""

import asyncio
import pytest
from unittest.mock import AsyncMock

from almond.dialog.errors import MalformedIntentError, UnexpectedIntentError
from almond.dialog.intents import QueryIntent, parse_intent
from almond.dialog.schemas import DialogMode
from almond.dialog.state_machine import DialogStateMachine
from almond.dialog.thingpedia import (
    FunctionRegistry,
    FunctionRole,
    FunctionSchema,
    KindInfo,
    ParamSpec,
    ValueType,
)
from almond.services.delegate import MessageKind
from almond.services.device_registry import InMemoryDeviceRegistry


def render(messages):
    return "".join(message.render() + "\n" for message in messages)


HELP_TRANSCRIPT = (
    ">> Click on one of the following buttons to start adding command.\n"
    ">> ask special generic\n"
    ">> choice 0: When\n"
    ">> choice 1: Get\n"
    ">> choice 2: Do\n"
)

TWEET = {"action": {"name": {"id": "tt:twitter.sink"}, "args": []}}
CHOICE_0 = {"answer": {"type": "Choice", "value": 0}}


def thermostat_functions() -> FunctionRegistry:
    functions = FunctionRegistry()
    functions.register_kind(KindInfo(kind="thermostat", name="Thermostat", category="home"))
    functions.register(FunctionSchema(
        kind="thermostat",
        name="set_target_temperature",
        role=FunctionRole.ACTION,
        params=(ParamSpec("value", ValueType.NUMBER),),
        confirmation="set your thermostat to $value degrees",
        canonical="set target temperature on thermostat",
    ))
    return functions


# ---------------------------------------------------------------------------
# WELCOME
# ---------------------------------------------------------------------------

class TestStart:
    """Tests for the welcome message."""

    @pytest.mark.asyncio
    async def test_welcome(self, machine):
        """Should introduce the assistant and expect nothing."""
        messages = await machine.start()

        assert render(messages) == (
            ">> Hello! I'm Almond, your virtual assistant.\n"
            ">> ask special null\n"
        )

    @pytest.mark.asyncio
    async def test_welcome_disabled(self, delegate, registry, loader):
        """Should stay silent when welcome messages are off."""
        machine = DialogStateMachine(delegate, registry, loader, show_welcome=False)

        assert await machine.start() == []

    @pytest.mark.asyncio
    async def test_messages_reach_delegate(self, machine, delegate):
        """Should forward every message of the turn to the delegate."""
        messages = await machine.handle_parsed({"special": "help"})

        assert delegate.messages == messages
        assert delegate.transcript() == HELP_TRANSCRIPT


# ---------------------------------------------------------------------------
# CANCELLATION
# ---------------------------------------------------------------------------

class TestCancellation:
    """Tests for nevermind and no."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("script", [
        [],
        [{"special": "help"}],
        [TWEET],
        [TWEET, CHOICE_0],
        [TWEET, CHOICE_0, {"answer": {"type": "String", "value": {"value": "lol"}}}],
        [{"special": "makerule"}, CHOICE_0],
        [{"special": "makerule"}, CHOICE_0,
         {"trigger": {"name": {"id": "tt:security-camera.new_event"}, "args": []}},
         {"answer": {"type": "Choice", "value": 3}}],
    ])
    async def test_nevermind_from_any_state(self, machine, loader, script):
        """Should reset silently, after which help behaves like a fresh session."""
        for given in script:
            await machine.handle_parsed(given)

        assert await machine.handle_parsed({"special": "nevermind"}) == []
        assert machine.mode is DialogMode.IDLE
        assert machine.state.program.is_empty
        assert render(await machine.handle_parsed({"special": "help"})) == HELP_TRANSCRIPT
        assert loader.apps == []

    @pytest.mark.asyncio
    async def test_no_discards_program(self, machine, loader):
        """Should reset without output and load nothing."""
        for given in [TWEET, CHOICE_0, {"answer": {"type": "String", "value": {"value": "lol"}}}]:
            await machine.handle_parsed(given)

        assert await machine.handle_parsed({"special": "no"}) == []
        assert machine.mode is DialogMode.IDLE
        assert loader.apps == []

    @pytest.mark.asyncio
    async def test_stale_device_lookup_discarded(self, delegate, registry, loader):
        """Should drop the result of a lookup that finishes after a cancel."""
        release = asyncio.Event()

        class SlowRegistry(InMemoryDeviceRegistry):
            async def get_devices(self, kind):
                await release.wait()
                return await super().get_devices(kind)

        machine = DialogStateMachine(delegate, SlowRegistry(devices=registry.all_devices()), loader)

        turn = asyncio.create_task(machine.handle_parsed(TWEET))
        await asyncio.sleep(0)
        machine.cancel()
        release.set()

        assert await turn == []
        assert machine.mode is DialogMode.IDLE
        assert machine.state.pending.current is None


# ---------------------------------------------------------------------------
# REJECTED INTENTS
# ---------------------------------------------------------------------------

class TestRejectedIntents:
    """Tests for intents the current state cannot accept."""

    @pytest.mark.asyncio
    async def test_answer_at_idle(self, machine):
        """Should reject an answer when nothing was asked."""
        with pytest.raises(UnexpectedIntentError):
            await machine.handle_parsed(CHOICE_0)

        assert machine.mode is DialogMode.IDLE

    @pytest.mark.asyncio
    async def test_out_of_range_device_choice(self, machine):
        """Should reject an index that was not offered and keep asking."""
        await machine.handle_parsed(TWEET)

        with pytest.raises(MalformedIntentError):
            await machine.handle_parsed({"answer": {"type": "Choice", "value": 2}})

        assert machine.mode is DialogMode.AWAITING_DEVICE_CHOICE
        assert len(machine.state.pending.candidates) == 2

    @pytest.mark.asyncio
    async def test_unknown_function(self, machine):
        """Should reject functions missing from the catalog."""
        with pytest.raises(MalformedIntentError):
            await machine.handle_parsed({"query": {"name": {"id": "tt:nope.nothing"}, "args": []}})

        assert machine.mode is DialogMode.IDLE

    @pytest.mark.asyncio
    async def test_wrong_role(self, machine):
        """Should reject an action function sent as a query."""
        with pytest.raises(MalformedIntentError):
            await machine.handle_parsed({"query": {"name": {"id": "tt:twitter.sink"}, "args": []}})

    @pytest.mark.asyncio
    async def test_yes_while_asking_slot(self, machine):
        """Should reject yes while a slot question is open."""
        await machine.handle_parsed(TWEET)
        await machine.handle_parsed(CHOICE_0)

        with pytest.raises(UnexpectedIntentError):
            await machine.handle_parsed({"special": "yes"})

        assert machine.mode is DialogMode.AWAITING_SLOT_VALUE

    @pytest.mark.asyncio
    async def test_bad_reference_in_action_of_rule(self, machine, delegate):
        """Should reject the whole rule before asking which Twitter account to use."""
        rule = {"rule": {
            "trigger": {"name": {"id": "tt:twitter.source"}, "args": []},
            "action": {"name": {"id": "tt:facebook.post"}, "args": [
                {"name": {"id": "tt:param.status"}, "type": "VarRef", "value": {"id": "tt:param.bogus"}},
            ]},
        }}

        with pytest.raises(MalformedIntentError, match="bogus"):
            await machine.handle_parsed(rule)

        assert delegate.messages == []
        assert machine.mode is DialogMode.IDLE
        assert machine.state.program.is_empty
        assert machine.state.pending.queue == []

    @pytest.mark.asyncio
    async def test_reference_to_trigger_output(self, machine):
        """Should accept a reference to a field of an earlier part of the rule."""
        messages = await machine.handle_parsed({"rule": {
            "trigger": {"name": {"id": "tt:twitter.source"}, "args": []},
            "action": {"name": {"id": "tt:facebook.post"}, "args": [
                {"name": {"id": "tt:param.status"}, "type": "VarRef", "value": {"id": "tt:param.text"}},
            ]},
        }})

        assert machine.mode is DialogMode.AWAITING_DEVICE_CHOICE
        assert messages[0].text == "You have multiple devices of type twitter. Which one do you want to use?"

    @pytest.mark.asyncio
    async def test_remote_query_with_local_action(self, machine, remote):
        """Should refuse to send a contact a rule that ends on one of our devices."""
        with pytest.raises(UnexpectedIntentError):
            await machine.handle_parsed({"rule": {
                "query": {"name": {"id": "tt:xkcd.get_comic"}, "person": "mom", "args": []},
                "action": TWEET["action"],
            }})

        assert machine.mode is DialogMode.IDLE
        assert remote.sent == []


# ---------------------------------------------------------------------------
# RECOVERABLE ERRORS
# ---------------------------------------------------------------------------

class TestRecoverableErrors:
    """Tests for errors reported to the user."""

    @pytest.mark.asyncio
    async def test_missing_device(self, delegate, loader, registry_factory):
        """Should link to the setup page and restore the empty program."""
        registry = registry_factory(setups={"facebook": {"type": "oauth2", "kind": "facebook"}})
        machine = DialogStateMachine(delegate, registry, loader, setup_url="/devices/create")

        messages = await machine.handle_parsed({"action": {"name": {"id": "tt:facebook.post"}, "args": []}})

        assert render(messages) == (
            ">> You don't have a Facebook.\n"
            ">> link: Configure Facebook /devices/create?kind=facebook\n"
            ">> ask special null\n"
        )
        assert machine.mode is DialogMode.IDLE
        assert machine.state.program.is_empty

    @pytest.mark.asyncio
    async def test_missing_device_after_earlier_stage(self, delegate, loader, registry_factory):
        """Should drop stages already added for the failed intent."""
        registry = registry_factory(setups={"facebook": {"type": "oauth2", "kind": "facebook",
                                                      "url": "/devices/oauth2/facebook"}})
        machine = DialogStateMachine(delegate, registry, loader)

        messages = await machine.handle_parsed({"rule": {
            "query": {"name": {"id": "tt:xkcd.get_comic"}, "args": []},
            "action": {"name": {"id": "tt:facebook.post"}, "args": []},
        }})

        assert messages[1].kind is MessageKind.LINK
        assert messages[1].url == "/devices/oauth2/facebook"
        assert machine.state.program.is_empty

    @pytest.mark.asyncio
    async def test_unknown_contact(self, machine):
        """Should say the contact is unknown and go back to idle."""
        messages = await machine.handle_parsed(
            {"query": {"name": {"id": "tt:xkcd.get_comic"}, "person": "bob", "args": []}}
        )

        assert render(messages) == (
            ">> I cannot find bob in your contacts.\n"
            ">> ask special null\n"
        )
        assert machine.mode is DialogMode.IDLE


# ---------------------------------------------------------------------------
# HAND-OFF FAILURES
# ---------------------------------------------------------------------------

class TestHandOffFailures:
    """Tests for loaders and remote senders that raise."""

    @pytest.mark.asyncio
    async def test_query_load_fails(self, machine, loader):
        """Should drop the query and accept new intents afterwards."""
        loader.load_app = AsyncMock(side_effect=RuntimeError("engine offline"))

        with pytest.raises(RuntimeError):
            await machine.handle_parsed({"query": {"name": {"id": "tt:xkcd.get_comic"}, "args": []}})

        assert machine.mode is DialogMode.IDLE
        assert machine.state.program.is_empty
        assert render(await machine.handle_parsed({"special": "help"})) == HELP_TRANSCRIPT

    @pytest.mark.asyncio
    async def test_confirmed_load_fails(self, machine, loader):
        """Should leave the session idle when the confirmed program cannot be loaded."""
        for given in [TWEET, CHOICE_0, {"answer": {"type": "String", "value": {"value": "lol"}}}]:
            await machine.handle_parsed(given)
        loader.load_app = AsyncMock(side_effect=RuntimeError("engine offline"))

        with pytest.raises(RuntimeError):
            await machine.handle_parsed({"special": "yes"})

        assert machine.mode is DialogMode.IDLE
        assert machine.state.program.is_empty
        assert render(await machine.handle_parsed({"special": "help"})) == HELP_TRANSCRIPT

    @pytest.mark.asyncio
    async def test_remote_send_fails(self, machine, remote):
        """Should leave the session idle when the contact cannot be reached."""
        await machine.handle_parsed({"query": {"name": {"id": "tt:xkcd.get_comic"}, "person": "mom", "args": []}})
        remote.send_rule = AsyncMock(side_effect=ConnectionError("unreachable"))

        with pytest.raises(ConnectionError):
            await machine.handle_parsed({"special": "yes"})

        assert machine.mode is DialogMode.IDLE
        assert remote.send_rule.await_count == 1


# ---------------------------------------------------------------------------
# TYPED VALUES
# ---------------------------------------------------------------------------

class TestTypedValues:
    """Tests for values typed by the user."""

    @pytest.mark.asyncio
    async def test_number_slot_rejects_text(self, delegate, registry, loader):
        """Should ask again until a number is given."""
        machine = DialogStateMachine(delegate, registry, loader, functions=thermostat_functions())
        first = await machine.handle_parsed(
            {"action": {"name": {"id": "tt:thermostat.set_target_temperature"}, "args": []}}
        )
        assert render(first) == (
            ">> What is the value of value?\n"
            ">> ask special generic\n"
        )

        retry = await machine.handle_command("warm")
        assert render(retry) == (
            ">> Sorry, I need a number.\n"
            ">> What is the value of value?\n"
            ">> ask special generic\n"
        )

        confirm = await machine.handle_command("21")
        assert confirm[0].text == "Ok, so you want me to set your thermostat to 21 degrees. Is that right?"

        await machine.handle_parsed({"special": "yes"})
        assert loader.last == (
            'AlmondGenerated() {\n'
            '    now => @(type="thermostat",id="thermostat-6").set_target_temperature(value=21) ;\n'
            '}'
        )

    @pytest.mark.asyncio
    async def test_description_of_result(self, machine, loader):
        """Should bind the event description when picked."""
        await machine.handle_parsed({"rule": {
            "trigger": {"name": {"id": "tt:security-camera.new_event"}, "args": []},
            "action": {"name": {"id": "tt:twitter.sink"}, "args": []},
        }})
        await machine.handle_parsed(CHOICE_0)
        await machine.handle_parsed(CHOICE_0)
        confirm = await machine.handle_parsed({"answer": {"type": "Choice", "value": 1}})

        assert confirm[0].text == (
            "Ok, so you want me to tweet the result when any event is detected on your security camera. "
            "Is that right?"
        )
        await machine.handle_parsed({"special": "yes"})
        assert 'sink(status=$event) ;' in loader.last


# ---------------------------------------------------------------------------
# RAW UTTERANCES
# ---------------------------------------------------------------------------

class TestCommands:
    """Tests for handle_command."""

    @pytest.mark.asyncio
    async def test_without_parser(self, machine):
        """Should say it did not understand."""
        messages = await machine.handle_command("get a comic")

        assert render(messages) == ">> Sorry, I did not understand that.\n"

    @pytest.mark.asyncio
    async def test_parsed_utterance(self, machine, loader):
        """Should dispatch the intent returned by the parser."""
        machine.parser = AsyncMock()
        machine.parser.parse.return_value = QueryIntent(function_id="tt:xkcd.get_comic")

        messages = await machine.handle_command("get a comic")

        machine.parser.parse.assert_awaited_once_with("get a comic", "test")
        assert render(messages) == ">> ask special null\n"
        assert len(loader.apps) == 1

    @pytest.mark.asyncio
    async def test_unparseable_utterance(self, machine):
        """Should say it did not understand when the parser has no answer."""
        machine.parser = AsyncMock()
        machine.parser.parse.return_value = None

        messages = await machine.handle_command("blah")

        assert messages[0].text == "Sorry, I did not understand that."

    @pytest.mark.asyncio
    async def test_free_text_skips_parser(self, machine):
        """Should take the text as the slot value while a question is open."""
        machine.parser = AsyncMock()
        await machine.handle_parsed(TWEET)
        await machine.handle_parsed(CHOICE_0)

        messages = await machine.handle_command("hello world")

        machine.parser.parse.assert_not_awaited()
        assert messages[0].text == 'Ok, so you want me to tweet "hello world". Is that right?'

    @pytest.mark.asyncio
    async def test_parse_intent_helper(self, machine, loader):
        """Should accept intents already parsed into models."""
        await machine.handle(parse_intent({"query": {"name": {"id": "tt:xkcd.get_comic"}}}))

        assert len(loader.apps) == 1
