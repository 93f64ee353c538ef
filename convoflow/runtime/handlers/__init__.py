# Copyright 2025 Ralph Lemke
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Convoflow node handlers.

One handler class per node kind, in four families:
trigger, control-flow, suspend and action.
"""

from ..types import NodeKind
from .actions import (
    EndHandler,
    HttpRequestHandler,
    RunScriptHandler,
    SendButtonsHandler,
    SendMediaHandler,
    SendMessageHandler,
    SetVariableHandler,
)
from .base import ActionHandler, HandlerEnv, NodeHandler, addressed
from .control import ConditionHandler, LoopHandler, SwitchHandler
from .suspend import WaitHandler, WaitReplyHandler, map_reply, process_reply
from .triggers import TriggerHandler, message_matches

__all__ = [
    "NodeHandler",
    "ActionHandler",
    "HandlerEnv",
    "NODE_HANDLERS",
    "get_handler",
    "addressed",
    # Triggers
    "TriggerHandler",
    "message_matches",
    # Control flow
    "ConditionHandler",
    "SwitchHandler",
    "LoopHandler",
    # Suspend
    "WaitHandler",
    "WaitReplyHandler",
    "process_reply",
    "map_reply",
    # Actions
    "SendMessageHandler",
    "SendMediaHandler",
    "SendButtonsHandler",
    "SetVariableHandler",
    "HttpRequestHandler",
    "RunScriptHandler",
    "EndHandler",
]


# Node kind -> handler class
NODE_HANDLERS: dict[str, type[NodeHandler]] = {
    NodeKind.TRIGGER_MESSAGE: TriggerHandler,
    NodeKind.TRIGGER_SCHEDULE: TriggerHandler,
    NodeKind.TRIGGER_MANUAL: TriggerHandler,
    NodeKind.CONDITION: ConditionHandler,
    NodeKind.SWITCH: SwitchHandler,
    NodeKind.LOOP: LoopHandler,
    NodeKind.WAIT: WaitHandler,
    NodeKind.WAIT_REPLY: WaitReplyHandler,
    NodeKind.SEND_MESSAGE: SendMessageHandler,
    NodeKind.SEND_MEDIA: SendMediaHandler,
    NodeKind.SEND_BUTTONS: SendButtonsHandler,
    NodeKind.SET_VARIABLE: SetVariableHandler,
    NodeKind.HTTP_REQUEST: HttpRequestHandler,
    NodeKind.RUN_SCRIPT: RunScriptHandler,
    NodeKind.END: EndHandler,
}


def get_handler(kind: str) -> type[NodeHandler] | None:
    """Get the default handler class for a node kind.

    Args:
        kind: The node kind

    Returns:
        Handler class, or None if the kind is unknown
    """
    return NODE_HANDLERS.get(kind)
