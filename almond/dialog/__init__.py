"""
Dialog Module - Turns intents into confirmed ThingTalk-style programs.

Example Flow:
============
Client sends: {"rule": {"query": {"name": {"id": "tt:xkcd.get_comic"}},
                        "action": {"name": {"id": "tt:twitter.post_picture"}}}}

DeviceResolver asks:   "You have multiple devices of type twitter. ..."
SlotFiller asks:       "What do you want to tweet?" / "Upload the picture now."
ProgramCompiler shows: "Ok, so you want me to get an Xkcd comic then tweet ..."

Result after "yes":
    AlmondGenerated() {
        now => @(type="xkcd",id="xkcd-1").get_comic() , ... => @(...).post_picture(...) ;
    }

Only the data modules are exported here; import the state machine from
``almond.dialog.state_machine``.
"""

from almond.dialog.errors import (
    DialogError,
    IncompleteProgramError,
    MalformedIntentError,
    NoDeviceError,
    UnexpectedIntentError,
    UnknownContactError,
)
from almond.dialog.intents import Intent, intent_to_json, parse_intent
from almond.dialog.schemas import DeviceDescriptor, DialogMode, Program, Stage
from almond.dialog.thingpedia import FunctionRegistry, function_registry

__all__ = [
    "DialogError",
    "IncompleteProgramError",
    "MalformedIntentError",
    "NoDeviceError",
    "UnexpectedIntentError",
    "UnknownContactError",
    "Intent",
    "intent_to_json",
    "parse_intent",
    "DeviceDescriptor",
    "DialogMode",
    "Program",
    "Stage",
    "FunctionRegistry",
    "function_registry",
]
