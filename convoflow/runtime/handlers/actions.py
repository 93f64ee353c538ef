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

"""Action node handlers.

Actions compose outbound effects or call external systems. Any failure is
folded into the node output by ActionHandler and the run carries on.
"""

import logging
from typing import Any

import requests

from ..context import MISSING, RESERVED_PREFIX
from ..result import Effect, EffectKind, StepResult
from ..script_executor import ScriptExecutor
from .base import ActionHandler, addressed

logger = logging.getLogger(__name__)


class SendMessageHandler(ActionHandler):
    """Queue a text message to the contact.

    Config: ``message`` (template), ``delay`` (milliseconds, passed to the sink).
    """

    def execute(self) -> StepResult:
        message = self.text("message", "text")
        if not message.strip():
            raise self.fail("message is empty")
        payload = {"message": message}
        delay = self.config("delay", "delayMs")
        if delay:
            payload["delayMs"] = int(delay)
        return StepResult.advance(
            self.next_node(),
            output={"message": message},
            effects=[Effect(EffectKind.SEND_MESSAGE, addressed(self.env.run, payload))],
        )


class SendMediaHandler(ActionHandler):
    """Queue an image, video, audio clip or document."""

    MEDIA_TYPES = ("image", "video", "audio", "document")

    def execute(self) -> StepResult:
        url = self.text("mediaUrl", "media_url", "url")
        if not url:
            raise self.fail("mediaUrl is required")
        media_type = str(self.config("mediaType", "media_type", default="image")).lower()
        if media_type not in self.MEDIA_TYPES:
            raise self.fail(f"unsupported media type '{media_type}'")
        payload = {"mediaUrl": url, "mediaType": media_type}
        caption = self.text("caption")
        if caption:
            payload["caption"] = caption
        file_name = self.text("fileName", "file_name")
        if file_name:
            payload["fileName"] = file_name
        return StepResult.advance(
            self.next_node(),
            output=dict(payload),
            effects=[Effect(EffectKind.SEND_MEDIA, addressed(self.env.run, payload))],
        )


class SendButtonsHandler(ActionHandler):
    """Queue an interactive message with reply buttons."""

    def execute(self) -> StepResult:
        message = self.text("message", "text")
        raw_buttons = self.config("buttons", default=[]) or []
        buttons = []
        for index, button in enumerate(raw_buttons):
            if isinstance(button, dict):
                label = button.get("text") or button.get("label") or button.get("title")
                button_id = button.get("id") or str(index + 1)
            else:
                label, button_id = button, str(index + 1)
            if label is None:
                continue
            buttons.append(
                {
                    "id": str(button_id),
                    "text": self.env.evaluator.interpolate(str(label), self.context),
                }
            )
        if not message.strip() or not buttons:
            raise self.fail("message and at least one button are required")
        payload: dict[str, Any] = {"message": message, "buttons": buttons}
        footer = self.text("footer")
        if footer:
            payload["footer"] = footer
        return StepResult.advance(
            self.next_node(),
            output={"message": message, "buttons": buttons},
            effects=[Effect(EffectKind.SEND_INTERACTIVE, addressed(self.env.run, payload))],
        )


class SetVariableHandler(ActionHandler):
    """Write variables.

    Either ``assignments: {name: value}`` or ``name`` + ``value`` + ``mode``
    where mode is ``set`` (default), ``append`` or ``increment``.
    """

    def execute(self) -> StepResult:
        assignments = self.config("assignments", "variables")
        written: dict[str, Any] = {}
        if isinstance(assignments, dict):
            for name, template in assignments.items():
                written[name] = self._assign(name, template, "set")
        else:
            name = self.config("name", "variableName", "variable")
            if not name:
                raise self.fail("variable name is required")
            mode = str(self.config("mode", "operation", default="set")).lower()
            written[name] = self._assign(str(name), self.node.get("value"), mode)
        return StepResult.advance(self.next_node(), output=dict(written))

    def _assign(self, name: str, template: Any, mode: str) -> Any:
        if name.startswith(RESERVED_PREFIX):
            raise self.fail(f"variable name '{name}' is reserved")
        value = self.env.evaluator.resolve_value(template, self.context)
        current = self.context.resolve(f"variables.{name}")

        if mode == "append":
            if current is MISSING or current is None:
                current = []
            elif not isinstance(current, list):
                current = [current]
            new_value = list(current) + (list(value) if isinstance(value, list) else [value])
        elif mode == "increment":
            step = 1 if value in (None, "") else value
            try:
                base = 0 if current in (MISSING, None, "") else float(current)
                new_value = base + float(step)
            except (TypeError, ValueError) as e:
                raise self.fail(f"cannot increment '{name}': {e}") from e
            if new_value == int(new_value):
                new_value = int(new_value)
        elif mode == "set":
            new_value = value
        else:
            raise self.fail(f"unknown mode '{mode}'")

        self.context.set_variable(name, new_value)
        return new_value


class HttpRequestHandler(ActionHandler):
    """Call an HTTP endpoint with requests.

    Non-2xx responses are not failures; the status lands in the output so
    the graph can branch on it. Transport errors become a folded fault.
    """

    def execute(self) -> StepResult:
        url = self.text("url")
        if not url:
            raise self.fail("url is required")
        method = str(self.config("method", default="GET")).upper()
        headers = self.resolved("headers", default={}) or {}
        params = self.resolved("params", "query", default=None)
        body = self.resolved("body", "data", default=None)
        default_timeout = self.env.config.http_timeout_seconds
        timeout = float(self.config("timeoutSeconds", "timeout_seconds", default=default_timeout))

        kwargs: dict[str, Any] = {"headers": headers, "params": params, "timeout": timeout}
        if body is not None and method not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["data"] = str(body).encode("utf-8")

        session = self.env.http or requests.Session()
        try:
            response = session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise self.fail(f"{method} {url} failed: {e}") from e

        try:
            data: Any = response.json()
        except ValueError:
            data = response.text

        output = {
            "status": response.status_code,
            "ok": response.ok,
            "data": data,
            "headers": dict(response.headers),
        }
        logger.debug(
            "HTTP request: node_id=%s method=%s url=%s status=%s",
            self.node.id,
            method,
            url,
            response.status_code,
        )
        save_as = self.config("saveAs", "save_as")
        if save_as:
            self.context.set_variable(save_as, data)
        return StepResult.advance(self.next_node(), output=output)


class RunScriptHandler(ActionHandler):
    """Run user Python in an isolated subprocess.

    The script sees a deep copy of the context as ``params`` and reports
    back through ``result``; it cannot touch the run directly.
    """

    def execute(self) -> StepResult:
        code = self.config("code", "script", default="")
        if not str(code).strip():
            raise self.fail("script is empty")
        timeout = self.config("timeoutSeconds", "timeout_seconds")
        executor = self.env.scripts or ScriptExecutor(
            timeout=self.env.config.script_timeout_seconds
        )
        if timeout is not None:
            executor = ScriptExecutor(timeout=float(timeout))

        outcome = executor.execute(str(code), self.context.snapshot())
        if not outcome.success:
            raise self.fail(outcome.error or "script failed")

        save_as = self.config("saveAs", "save_as")
        if save_as:
            value = outcome.result.get("value", outcome.result)
            self.context.set_variable(save_as, value)
        return StepResult.advance(self.next_node(), output=dict(outcome.result))


class EndHandler(ActionHandler):
    """Finish the run.

    ``outputVariables`` (list or comma-separated names) become the final
    output; without it the previous node's output is kept.
    """

    def execute(self) -> StepResult:
        names = self.config("outputVariables", "output_variables")
        if isinstance(names, str):
            names = [n.strip() for n in names.split(",") if n.strip()]
        output = None
        if names:
            output = {}
            for name in names:
                value = self.context.resolve(f"variables.{name}")
                output[name] = None if value is MISSING else value
        return StepResult.finish(output=output, reason="end")
