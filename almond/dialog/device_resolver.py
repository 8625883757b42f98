"""
Device Resolver - Picks the device instance a stage runs on.

Problem it Solves:
=================
A function names a kind ("twitter"), but the program needs a concrete
device ("twitter-foo"). The user may have:

- exactly one device of that kind   -> use it, ask nothing
- several                           -> ask which one, in registry order
- none, and the kind needs no setup -> configure one on the fly
- none, and the kind needs setup    -> NoDeviceError, tell the user how

Remote stages never reach the resolver; they run on someone else's devices.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from almond.core.config import settings
from almond.dialog.errors import MalformedIntentError, NoDeviceError
from almond.dialog.schemas import DeviceDescriptor
from almond.dialog.thingpedia import FunctionRegistry, function_registry
from almond.services.delegate import AskSpecial, OutputChannel
from almond.services.device_registry import SETUP_NONE, DeviceRegistry


logger = logging.getLogger("almond.dialog.device_resolver")


@dataclass
class Resolution:
    """
    Outcome of a device lookup.

    Exactly one of ``device`` (resolved) or ``candidates`` (user must pick)
    is set.
    """
    device: Optional[DeviceDescriptor] = None
    candidates: List[DeviceDescriptor] = field(default_factory=list)

    @property
    def needs_choice(self) -> bool:
        return self.device is None


class DeviceResolver:
    """
    Resolves a kind to a single device, asking the user when ambiguous.

    Usage:
        resolver = DeviceResolver(registry)

        resolution = await resolver.resolve("twitter")
        if resolution.needs_choice:
            resolver.prompt("twitter", resolution.candidates, channel)
            ...
            device = resolver.choose(resolution.candidates, answer_index)
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        functions: Optional[FunctionRegistry] = None,
        setup_url: Optional[str] = None,
    ):
        self.registry = registry
        self.functions = functions or function_registry
        self.setup_url = setup_url if setup_url is not None else settings.DEVICE_SETUP_URL

    async def resolve(self, kind: str) -> Resolution:
        """
        Look up the devices of a kind.

        Args:
            kind: Device kind, e.g. "twitter"

        Returns:
            Resolution with either the device or the candidates to offer

        Raises:
            NoDeviceError: If there is no device and the kind needs setup
        """
        devices = await self.registry.get_devices(kind)

        if len(devices) == 1:
            logger.debug(f"Auto-selected {devices[0].id} for {kind}")
            return Resolution(device=devices[0])
        if len(devices) > 1:
            logger.debug(f"{len(devices)} devices of kind {kind}, asking")
            return Resolution(candidates=list(devices))

        setup = await self.registry.get_device_setup(kind)
        if setup.get("type") == SETUP_NONE:
            device = await self.registry.add_device(kind)
            return Resolution(device=device)

        logger.warning(f"No device of kind {kind} (setup: {setup.get('type')})")
        raise NoDeviceError(kind, setup)

    def prompt(self, kind: str, candidates: List[DeviceDescriptor], channel: OutputChannel) -> None:
        """Ask the user to pick one of several devices."""
        channel.send(f"You have multiple devices of type {kind}. Which one do you want to use?")
        channel.send_ask_special(AskSpecial.GENERIC)
        for index, device in enumerate(candidates):
            channel.send_choice(index, "device", device.label, device.label)

    def choose(self, candidates: List[DeviceDescriptor], index) -> DeviceDescriptor:
        """
        Map a choice index back to the device it was shown for.

        Raises:
            MalformedIntentError: If the index was not offered
        """
        if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(candidates):
            raise MalformedIntentError(f"Invalid device choice: {index!r}")
        return candidates[index]

    def report_missing(self, error: NoDeviceError, channel: OutputChannel) -> None:
        """Tell the user a device is missing and where to configure it."""
        name = self.functions.kind_info(error.kind).name
        url = error.setup.get("url") or f"{self.setup_url}?kind={error.kind}"
        channel.send(f"You don't have a {name}.")
        channel.send_link(f"Configure {name}", url)
        channel.send_ask_special(AskSpecial.NULL)
