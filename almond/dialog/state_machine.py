"""
Dialog State Machine - Turns a stream of intents into a confirmed program.

This is the orchestrator. Every intent goes through ``handle``, which looks
at the current mode and routes it:

    IDLE                      help / makerule -> builder menu
                              trigger / query / action / rule -> assembly
    AWAITING_DEVICE_CHOICE    Choice(i) -> bind device, continue assembly
    AWAITING_SLOT_VALUE       Choice(i) / typed value -> fill slot, continue
    AWAITING_BUILDER_CHOICE   Choice(i) -> When/Get/Do, Add a filter, Run it
    AWAITING_COMMAND          command, category button, Do it now, Back
    AWAITING_FILTER_TARGET    Choice(i) -> which command to filter
    AWAITING_FILTER_SPEC      Filter(field, operator) -> ask for the value
    AWAITING_FILTER_VALUE     typed value -> attach filter, back to menu
    AWAITING_CONFIRMATION     yes -> commit, no -> reset
    DONE                      hand-off in progress

``nevermind`` is checked before any of this and always resets to IDLE
without output.

Assembly:
=========
A command intent becomes a queue of function intents (trigger, query,
action). Each one is turned into a stage in turn: resolve the device (or
the contact for remote queries), then fill its slots, then append it to the
program. When the queue is empty the program is either run immediately
(local queries only) or confirmed with the user.

Error policy:
=============
- NoDeviceError / UnknownContactError: told to the user, the intent is
  aborted and the program goes back to what it was before it.
- MalformedIntentError / UnexpectedIntentError: propagate to the caller,
  session state unchanged. A rule is validated as a whole before any of
  its stages is resolved.
- Loader or remote sender failures: the program is dropped, the session
  goes back to IDLE and the error propagates.
- Cancellation while an await is in flight: when the await returns, the
  result is discarded because the state's generation has moved on.

Usage:
    machine = DialogStateMachine(delegate, devices=registry, loader=loader)
    await machine.start()
    messages = await machine.handle_parsed('{"special": "help"}')
"""

import copy
import logging
from typing import Any, Awaitable, Dict, List, Optional, Union

from almond.core.config import settings
from almond.dialog.compiler import ProgramCompiler
from almond.dialog.device_resolver import DeviceResolver
from almond.dialog.errors import (
    MalformedIntentError,
    NoDeviceError,
    UnexpectedIntentError,
    UnknownContactError,
)
from almond.dialog.intents import (
    COMMAND_INTENTS,
    AnswerIntent,
    AnswerType,
    CommandIntent,
    FilterIntent,
    FunctionIntent,
    Intent,
    QueryIntent,
    RuleIntent,
    SpecialIntent,
    SpecialName,
    parse_intent,
)
from almond.dialog.rule_builder import MenuAction, RuleBuilder, RuleDraft, role_of
from almond.dialog.schemas import DialogMode, DialogState, PendingContext
from almond.dialog.slot_filler import NEED_NUMBER, SlotFiller
from almond.dialog.thingpedia import FunctionRegistry, FunctionRole, ValueType, function_registry
from almond.services.app_loader import AppLoader, ContactDirectory, RemoteSender
from almond.services.delegate import AskSpecial, Message, OutputChannel, TurnRecorder
from almond.services.device_registry import DeviceRegistry
from almond.services.flow_token import TokenGenerator
from almond.services.semantic_parser import SemanticParser


logger = logging.getLogger("almond.dialog.state_machine")


NOT_UNDERSTOOD = "Sorry, I did not understand that."
DONE_TEXT = "Consider it done."


class _StaleTurn(Exception):
    """The session was reset while this turn was waiting on I/O."""
    pass


class DialogStateMachine:
    """
    One dialog session.

    All collaborators are injected; only ``delegate``, ``devices`` and
    ``loader`` are required.

    Args:
        delegate: Where messages go
        devices: Device registry
        loader: Runs confirmed local programs
        remote: Sends programs to contacts
        contacts: Resolves the ``person`` of remote queries
        parser: Turns free text into intents
        functions: Function catalog
        token_generator: Flow tokens for remote programs
        session_id: Sent to the parser with every utterance
        assistant_name: Overrides ASSISTANT_NAME
        show_welcome: Overrides SHOW_WELCOME
        setup_url: Overrides DEVICE_SETUP_URL
    """

    def __init__(
        self,
        delegate: OutputChannel,
        devices: DeviceRegistry,
        loader: AppLoader,
        remote: Optional[RemoteSender] = None,
        contacts: Optional[ContactDirectory] = None,
        parser: Optional[SemanticParser] = None,
        functions: Optional[FunctionRegistry] = None,
        token_generator: Optional[TokenGenerator] = None,
        session_id: str = "default",
        assistant_name: Optional[str] = None,
        show_welcome: Optional[bool] = None,
        setup_url: Optional[str] = None,
    ):
        self.delegate = delegate
        self.loader = loader
        self.remote = remote
        self.contacts = contacts
        self.parser = parser
        self.functions = functions or function_registry
        self.session_id = session_id
        self.assistant_name = assistant_name or settings.ASSISTANT_NAME
        self.show_welcome = settings.SHOW_WELCOME if show_welcome is None else show_welcome

        self.resolver = DeviceResolver(devices, self.functions, setup_url)
        self.slots = SlotFiller()
        self.builder = RuleBuilder(self.functions)
        self.compiler = ProgramCompiler(token_generator)

        self.state = DialogState()

    # -----------------------------------------------------------------------
    # PUBLIC API
    # -----------------------------------------------------------------------

    @property
    def mode(self) -> DialogMode:
        return self.state.mode

    @property
    def expects_free_text(self) -> bool:
        """Whether raw text should be taken as the answer itself."""
        return self.state.mode in (DialogMode.AWAITING_SLOT_VALUE, DialogMode.AWAITING_FILTER_VALUE)

    async def start(self) -> List[Message]:
        """Greet the user, if welcome messages are enabled."""
        turn = TurnRecorder(self.delegate)
        if self.show_welcome:
            turn.send(f"Hello! I'm {self.assistant_name}, your virtual assistant.")
            turn.send_ask_special(AskSpecial.NULL)
        return turn.messages

    def cancel(self) -> None:
        """Drop everything in progress. Never emits anything."""
        logger.debug(f"[{self.session_id}] Cancelled in mode {self.state.mode.value}")
        self.state.reset()

    async def handle_parsed(self, payload: Union[str, bytes, Dict[str, Any]]) -> List[Message]:
        """Handle an already parsed intent in wire form."""
        return await self.handle(parse_intent(payload))

    async def handle_command(self, text: str) -> List[Message]:
        """
        Handle a raw utterance.

        While a value is being asked for, the text is the answer. Otherwise it
        goes through the semantic parser.
        """
        if self.expects_free_text:
            return await self.handle(AnswerIntent(type=AnswerType.STRING, value=text))

        if self.parser is None:
            return self._not_understood()

        generation = self.state.generation
        intent = await self.parser.parse(text, self.session_id)
        if self.state.generation != generation:
            logger.warning(f"[{self.session_id}] Discarding parse of {text!r} after cancel")
            return []
        if intent is None:
            return self._not_understood()
        return await self.handle(intent)

    async def handle(self, intent: Intent) -> List[Message]:
        """
        Process one intent to completion.

        Returns:
            The messages emitted during this turn

        Raises:
            MalformedIntentError: If the intent is invalid or not acceptable
                now; the session is left as it was
        """
        turn = TurnRecorder(self.delegate)

        if isinstance(intent, SpecialIntent) and intent.name is SpecialName.NEVERMIND:
            self.cancel()
            return turn.messages

        saved = copy.deepcopy(self.state)
        generation = self.state.generation
        logger.debug(f"[{self.session_id}] {type(intent).__name__} in mode {self.state.mode.value}")

        try:
            await self._dispatch(intent, turn, generation)
        except _StaleTurn:
            logger.warning(f"[{self.session_id}] Discarding stale result after cancel")
        except MalformedIntentError:
            if self.state.generation == generation:
                self.state = saved
            raise
        return turn.messages

    def _not_understood(self) -> List[Message]:
        turn = TurnRecorder(self.delegate)
        turn.send(NOT_UNDERSTOOD)
        return turn.messages

    def _check(self, generation: int) -> None:
        if self.state.generation != generation:
            raise _StaleTurn()

    # -----------------------------------------------------------------------
    # DISPATCH
    # -----------------------------------------------------------------------

    async def _dispatch(self, intent: Intent, channel: OutputChannel, generation: int) -> None:
        mode = self.state.mode

        if mode is DialogMode.IDLE:
            await self._on_idle(intent, channel, generation)
        elif mode is DialogMode.AWAITING_DEVICE_CHOICE:
            await self._on_device_choice(intent, channel, generation)
        elif mode is DialogMode.AWAITING_SLOT_VALUE:
            await self._on_slot_value(intent, channel, generation)
        elif mode is DialogMode.AWAITING_BUILDER_CHOICE:
            await self._on_builder_choice(intent, channel, generation)
        elif mode is DialogMode.AWAITING_COMMAND:
            self._on_command(intent, channel)
        elif mode is DialogMode.AWAITING_FILTER_TARGET:
            self._on_filter_target(intent, channel)
        elif mode is DialogMode.AWAITING_FILTER_SPEC:
            self._on_filter_spec(intent, channel)
        elif mode is DialogMode.AWAITING_FILTER_VALUE:
            self._on_filter_value(intent, channel)
        elif mode is DialogMode.AWAITING_CONFIRMATION:
            await self._on_confirmation(intent, channel, generation)
        else:
            raise UnexpectedIntentError("A program is being handed off, please wait")

    @staticmethod
    def _unexpected(intent: Intent, mode: DialogMode) -> UnexpectedIntentError:
        return UnexpectedIntentError(f"{type(intent).__name__} is not expected in mode {mode.value}")

    @staticmethod
    def _choice_index(intent: Intent, mode: DialogMode) -> Any:
        if isinstance(intent, AnswerIntent) and intent.type is AnswerType.CHOICE:
            return intent.value
        raise DialogStateMachine._unexpected(intent, mode)

    async def _on_idle(self, intent: Intent, channel: OutputChannel, generation: int) -> None:
        if isinstance(intent, SpecialIntent) and intent.name in (SpecialName.HELP, SpecialName.MAKERULE):
            self.state.pending = PendingContext(draft=RuleDraft())
            self.state.mode = DialogMode.AWAITING_BUILDER_CHOICE
            self.builder.show_menu(self.state.pending.draft, channel)
            return
        if isinstance(intent, COMMAND_INTENTS):
            await self._begin_command(intent, channel, generation)
            return
        raise self._unexpected(intent, DialogMode.IDLE)

    # -----------------------------------------------------------------------
    # STAGE ASSEMBLY
    # -----------------------------------------------------------------------

    async def _begin_command(self, intent: Intent, channel: OutputChannel, generation: int) -> None:
        parts: List[FunctionIntent] = intent.parts() if isinstance(intent, RuleIntent) else [intent]
        self._validate_parts(parts)

        self.state.pending = PendingContext(queue=list(parts), snapshot=self.state.program.snapshot())
        await self._assemble(channel, generation)

    def _validate_parts(self, parts: List[FunctionIntent]) -> None:
        """
        Reject a command before any of its stages touches a device.

        Variable references may name outputs of the program so far or of
        earlier parts of the same rule.

        Raises:
            MalformedIntentError: For wrong roles or bad explicit arguments
            UnexpectedIntentError: For a local action after a remote query
        """
        program = self.state.program
        fields = {binding.field for _, binding in program.available_bindings()}
        remote = program.remote_stage is not None

        for part in parts:
            role = role_of(part)
            schema = self.functions.get(part.function_id)
            if schema.role is not role:
                raise MalformedIntentError(f"{schema.function_id} cannot be used as a {role.value}")
            if role is FunctionRole.ACTION and remote:
                raise UnexpectedIntentError("A rule sent to a contact cannot end with a local action")
            self.slots.check(part, schema, fields)
            fields.update(spec.name for spec in schema.outputs)
            if isinstance(part, QueryIntent) and part.person:
                remote = True

    async def _assemble(self, channel: OutputChannel, generation: int) -> None:
        """Advance assembly, turning recoverable errors into messages."""
        try:
            await self._advance(channel, generation)
        except NoDeviceError as e:
            self._abort_intent()
            self.resolver.report_missing(e, channel)
        except UnknownContactError as e:
            self._abort_intent()
            channel.send(f"I cannot find {e.person} in your contacts.")
            channel.send_ask_special(AskSpecial.NULL)

    def _abort_intent(self) -> None:
        snapshot = self.state.pending.snapshot
        if snapshot is not None:
            self.state.program.restore(snapshot)
        self.state.pending = PendingContext()
        self.state.mode = DialogMode.IDLE

    async def _advance(self, channel: OutputChannel, generation: int) -> None:
        """Resolve stages until a question must be asked or the queue is done."""
        pending = self.state.pending
        program = self.state.program

        while True:
            if pending.current is None:
                if not pending.queue:
                    await self._finish(channel, generation)
                    return
                ready = await self._start_stage(pending.queue.pop(0), channel, generation)
                if not ready:
                    return

            prompt = self.slots.next_prompt(pending.current, program)
            if prompt is not None:
                pending.slot_prompt = prompt
                self.state.mode = DialogMode.AWAITING_SLOT_VALUE
                self.slots.ask(prompt, channel)
                return

            program.append(pending.current.to_stage(program))
            pending.current = None
            pending.slot_prompt = None

    async def _start_stage(self, intent: FunctionIntent, channel: OutputChannel, generation: int) -> bool:
        """
        Make a draft for the next intent and pick where it runs.

        Returns:
            True if slot filling can start, False if a device choice was asked
        """
        role = role_of(intent)
        schema = self.functions.get(intent.function_id)
        draft = self.slots.prepare(intent, role, schema, self.state.program)
        self.state.pending.current = draft

        if isinstance(intent, QueryIntent) and intent.person:
            if self.contacts is None:
                raise UnknownContactError(intent.person)
            contact = await self.contacts.lookup(intent.person)
            self._check(generation)
            if contact is None:
                raise UnknownContactError(intent.person)
            draft.remote = contact
            draft.person = intent.person
            return True

        resolution = await self.resolver.resolve(schema.kind)
        self._check(generation)
        if not resolution.needs_choice:
            draft.device = resolution.device
            return True

        self.state.pending.candidates = resolution.candidates
        self.state.mode = DialogMode.AWAITING_DEVICE_CHOICE
        self.resolver.prompt(schema.kind, resolution.candidates, channel)
        return False

    async def _on_device_choice(self, intent: Intent, channel: OutputChannel, generation: int) -> None:
        index = self._choice_index(intent, DialogMode.AWAITING_DEVICE_CHOICE)
        pending = self.state.pending
        pending.current.device = self.resolver.choose(pending.candidates, index)
        pending.candidates = []
        await self._assemble(channel, generation)

    async def _on_slot_value(self, intent: Intent, channel: OutputChannel, generation: int) -> None:
        if not isinstance(intent, AnswerIntent):
            raise self._unexpected(intent, DialogMode.AWAITING_SLOT_VALUE)
        pending = self.state.pending
        follow_up = self.slots.answer(pending.current, pending.slot_prompt, intent, channel)
        if follow_up is not None:
            pending.slot_prompt = follow_up
            return
        pending.slot_prompt = None
        await self._assemble(channel, generation)

    # -----------------------------------------------------------------------
    # CONFIRMATION AND COMMIT
    # -----------------------------------------------------------------------

    async def _finish(self, channel: OutputChannel, generation: int) -> None:
        program = self.state.program
        if program.is_read_only:
            compiled = self.compiler.compile(program)
            self.state.mode = DialogMode.DONE
            await self._hand_off(self.loader.load_app(compiled.code), generation)
            logger.info(f"[{self.session_id}] Ran query program")
            self.state.reset()
            channel.send_ask_special(AskSpecial.NULL)
            return

        self.state.pending = PendingContext()
        self.state.mode = DialogMode.AWAITING_CONFIRMATION
        channel.send(self.compiler.confirmation(program))
        channel.send_ask_special(AskSpecial.YESNO)

    async def _on_confirmation(self, intent: Intent, channel: OutputChannel, generation: int) -> None:
        answer = None
        if isinstance(intent, SpecialIntent) and intent.name in (SpecialName.YES, SpecialName.NO):
            answer = intent.name is SpecialName.YES
        elif isinstance(intent, AnswerIntent) and intent.type is AnswerType.BOOLEAN:
            answer = bool(intent.value)
        if answer is None:
            raise self._unexpected(intent, DialogMode.AWAITING_CONFIRMATION)

        if not answer:
            logger.debug(f"[{self.session_id}] Program rejected")
            self.state.reset()
            return
        await self._commit(channel, generation)

    async def _commit(self, channel: OutputChannel, generation: int) -> None:
        program = self.state.program
        compiled = self.compiler.compile(program)
        self.state.mode = DialogMode.DONE

        if compiled.remote is not None:
            if self.remote is None:
                raise UnexpectedIntentError("No remote sender is configured")
            channel.send(f"Sending rule to {compiled.remote.contact.name}: {self.compiler.remote_summary(program)}")
            await self._hand_off(self.remote.send_rule(compiled.remote, compiled.code), generation)
        else:
            await self._hand_off(self.loader.load_app(compiled.code), generation)

        logger.info(f"[{self.session_id}] Program committed ({len(program.stages)} stages)")
        self.state.reset()
        channel.send(DONE_TEXT)
        channel.send_ask_special(AskSpecial.NULL)

    async def _hand_off(self, operation: Awaitable[None], generation: int) -> None:
        """Await the loader or remote sender; a failure drops the program."""
        try:
            await operation
        except Exception as e:
            if self.state.generation == generation:
                logger.error(f"[{self.session_id}] Program hand-off failed: {e}")
                self.state.reset()
            raise
        self._check(generation)

    # -----------------------------------------------------------------------
    # GUIDED BUILDER
    # -----------------------------------------------------------------------

    def _show_menu(self, channel: OutputChannel) -> None:
        pending = self.state.pending
        pending.builder_role = None
        pending.filter_target = None
        pending.filter_spec = None
        self.state.mode = DialogMode.AWAITING_BUILDER_CHOICE
        self.builder.show_menu(pending.draft, channel)

    async def _on_builder_choice(self, intent: Intent, channel: OutputChannel, generation: int) -> None:
        index = self._choice_index(intent, DialogMode.AWAITING_BUILDER_CHOICE)
        pending = self.state.pending
        entry = self.builder.pick(pending.draft, index)

        if entry.action is MenuAction.PICK:
            pending.builder_role = entry.role
            self.state.mode = DialogMode.AWAITING_COMMAND
            self.builder.show_categories(entry.role, channel)
        elif entry.action is MenuAction.FILTER:
            self.state.mode = DialogMode.AWAITING_FILTER_TARGET
            self.builder.show_filter_targets(pending.draft, channel)
        else:
            rule = self.builder.to_rule(pending.draft)
            logger.debug(f"[{self.session_id}] Running built rule")
            self.state.pending = PendingContext()
            self.state.mode = DialogMode.IDLE
            await self._begin_command(rule, channel, generation)

    def _on_command(self, intent: Intent, channel: OutputChannel) -> None:
        pending = self.state.pending
        role = pending.builder_role

        if isinstance(intent, SpecialIntent) and intent.name is SpecialName.BACK:
            self._show_menu(channel)
        elif isinstance(intent, SpecialIntent) and intent.name is SpecialName.EMPTY:
            if role is not FunctionRole.TRIGGER:
                raise self._unexpected(intent, DialogMode.AWAITING_COMMAND)
            pending.draft.stages.pop(FunctionRole.TRIGGER, None)
            pending.draft.now = True
            self._show_menu(channel)
        elif isinstance(intent, CommandIntent):
            if intent.type != "help":
                raise MalformedIntentError(f"Unknown command type: {intent.type}")
            self.builder.show_category(role, intent.value, channel)
        elif isinstance(intent, RuleIntent):
            self.builder.place_rule(pending.draft, intent)
            self._show_menu(channel)
        elif isinstance(intent, COMMAND_INTENTS):
            self.builder.place(pending.draft, intent)
            self._show_menu(channel)
        else:
            raise self._unexpected(intent, DialogMode.AWAITING_COMMAND)

    def _on_filter_target(self, intent: Intent, channel: OutputChannel) -> None:
        if isinstance(intent, SpecialIntent) and intent.name is SpecialName.BACK:
            self._show_menu(channel)
            return
        index = self._choice_index(intent, DialogMode.AWAITING_FILTER_TARGET)
        pending = self.state.pending
        target = self.builder.pick_filter_target(pending.draft, index)
        if target is None:
            self._show_menu(channel)
            return
        pending.filter_target = target
        self.state.mode = DialogMode.AWAITING_FILTER_SPEC
        self.builder.show_filter_specs(pending.draft.stages[target], channel)

    def _on_filter_spec(self, intent: Intent, channel: OutputChannel) -> None:
        if isinstance(intent, SpecialIntent) and intent.name is SpecialName.BACK:
            self._show_menu(channel)
            return
        if not isinstance(intent, FilterIntent):
            raise self._unexpected(intent, DialogMode.AWAITING_FILTER_SPEC)
        pending = self.state.pending
        stage = pending.draft.stages[pending.filter_target]
        pending.filter_spec = self.builder.match_filter(stage, intent)
        self.state.mode = DialogMode.AWAITING_FILTER_VALUE
        self.builder.ask_filter_value(channel)

    def _on_filter_value(self, intent: Intent, channel: OutputChannel) -> None:
        if not isinstance(intent, AnswerIntent) or intent.type is AnswerType.CHOICE:
            raise self._unexpected(intent, DialogMode.AWAITING_FILTER_VALUE)
        pending = self.state.pending
        stage = pending.draft.stages[pending.filter_target]
        try:
            self.builder.add_filter(stage, pending.filter_spec, intent.value)
        except (ValueError, TypeError):
            logger.warning(f"[{self.session_id}] Rejected filter value {intent.value!r}")
            channel.send(NEED_NUMBER if pending.filter_spec.value_type is ValueType.NUMBER
                         else "Sorry, that is not a valid value for this filter.")
            self.builder.ask_filter_value(channel)
            return
        self._show_menu(channel)
