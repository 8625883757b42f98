"""
Device Registry - Injected lookup of the user's configured devices.

The dialog only ever asks three things of the registry:

    get_devices(kind)        configured instances of a kind, in registry order
    get_device_setup(kind)   how a missing device of that kind is configured
    add_device(kind)         configure a device that needs no user input

Setup descriptors are plain dicts as returned by the device catalog, e.g.
``{"type": "none", "kind": "xkcd"}`` or
``{"type": "oauth2", "kind": "twitter", "url": "/devices/oauth2/twitter"}``.
A setup of type ``none`` means the device can be created on the fly.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from almond.dialog.schemas import DeviceDescriptor
from almond.dialog.thingpedia import FunctionRegistry, function_registry


logger = logging.getLogger("almond.services.device_registry")


SETUP_NONE = "none"


class DeviceRegistry(ABC):
    """Abstract device registry."""

    @abstractmethod
    async def get_devices(self, kind: str) -> List[DeviceDescriptor]:
        pass

    @abstractmethod
    async def get_device_setup(self, kind: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def add_device(self, kind: str) -> DeviceDescriptor:
        pass


class InMemoryDeviceRegistry(DeviceRegistry):
    """
    Registry backed by a list, used by the HTTP service and by tests.

    Devices created through ``add_device`` get ids ``<kind>-<n>`` from one
    counter shared by all kinds, and are labelled with the kind's display
    name.

    Args:
        devices: Initially configured devices, in registry order
        setups: Setup descriptor per kind; kinds not listed need no setup
        functions: Catalog used for display names of created devices
        first_id: First number handed out by ``add_device``
    """

    def __init__(
        self,
        devices: Optional[Iterable[DeviceDescriptor]] = None,
        setups: Optional[Dict[str, Dict[str, Any]]] = None,
        functions: Optional[FunctionRegistry] = None,
        first_id: int = 1,
    ):
        self._devices: List[DeviceDescriptor] = list(devices or [])
        self._setups = dict(setups or {})
        self._functions = functions or function_registry
        self._next_id = first_id

    async def get_devices(self, kind: str) -> List[DeviceDescriptor]:
        return [device for device in self._devices if device.kind == kind]

    async def get_device_setup(self, kind: str) -> Dict[str, Any]:
        return self._setups.get(kind, {"type": SETUP_NONE, "kind": kind})

    async def add_device(self, kind: str) -> DeviceDescriptor:
        device = DeviceDescriptor(
            kind=kind,
            id=f"{kind}-{self._next_id}",
            label=self._functions.kind_info(kind).name,
        )
        self._next_id += 1
        self._devices.append(device)
        logger.info(f"Auto-configured device {device.id}")
        return device

    def all_devices(self) -> List[DeviceDescriptor]:
        return list(self._devices)
