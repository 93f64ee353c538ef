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

"""Sandboxed execution for RUN_SCRIPT nodes.

Scripts run in a separate interpreter (``python -I``, empty environment)
with a whitelist of builtins and a hard timeout. The run context arrives as
a JSON copy in ``params``; the script writes what it wants to return into
the ``result`` dict.

Example usage::

    executor = ScriptExecutor(timeout=5)
    outcome = executor.execute(
        'result["value"] = params["variables"]["name"].upper()',
        {"variables": {"name": "ana"}},
    )
    # outcome.result == {"value": "ANA"}
"""

from __future__ import annotations

import base64
import json
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ScriptResult:
    """Outcome of one script execution."""

    success: bool
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    stdout: str = ""


# Builtins visible to scripts; no import, open, eval, exec or compile
SAFE_BUILTIN_NAMES: tuple[str, ...] = (
    "bool", "int", "float", "str", "list", "dict", "tuple", "set", "frozenset",
    "len", "range", "enumerate", "zip", "map", "filter", "sorted", "reversed",
    "min", "max", "sum", "abs", "round", "all", "any", "isinstance",
    "repr", "print", "divmod", "pow",
    "None", "True", "False",
    "Exception", "ValueError", "TypeError", "KeyError", "IndexError",
)

_WORKER_TEMPLATE = """\
import base64 as _b64, builtins as _b, io as _io, json as _json, sys as _sys
_out = _sys.stdout
_printed = _io.StringIO()
_safe = {{n: getattr(_b, n) for n in {names!r}}}
_safe["print"] = lambda *a, **kw: _b.print(*a, file=_printed)
_scope = {{"__builtins__": _safe, "params": _json.loads(_b64.b64decode({params!r})), "result": {{}}}}
try:
    exec(compile(_b64.b64decode({code!r}).decode(), "<script>", "exec"), _scope)
    _json.dump({{"success": True, "result": _scope["result"], "stdout": _printed.getvalue()}}, _out, default=str)
except SyntaxError as _e:
    _json.dump({{"success": False, "error": "Syntax error in script: %s" % _e}}, _out)
except BaseException as _e:
    _json.dump({{"success": False, "error": "%s: %s" % (type(_e).__name__, _e)}}, _out)
"""


def build_worker(code: str, params: dict[str, Any]) -> str:
    """Render the worker program for one script.

    Code and params travel base64-encoded so no quoting can break out of
    the generated source.

    Raises:
        TypeError: If params are not JSON-serializable
    """
    params_b64 = base64.b64encode(json.dumps(params).encode()).decode()
    code_b64 = base64.b64encode(code.encode()).decode()
    return _WORKER_TEMPLATE.format(names=SAFE_BUILTIN_NAMES, params=params_b64, code=code_b64)


def parse_worker_output(stdout: str, stderr: str) -> ScriptResult:
    """Decode the worker's single JSON line."""
    if not stdout.strip():
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output from script"
        return ScriptResult(success=False, error=f"Script execution error: {detail}")
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError:
        return ScriptResult(success=False, error="Script execution error: unreadable worker output")
    if not data.get("success"):
        return ScriptResult(success=False, error=data.get("error", "Unknown script error"))
    result = data.get("result")
    if not isinstance(result, dict):
        return ScriptResult(success=False, error="Script execution error: result must be a dict")
    return ScriptResult(success=True, result=result, stdout=data.get("stdout", ""))


class ScriptExecutor:
    """Runs scripts in a child interpreter with a timeout.

    Attributes:
        timeout: Wall-clock limit in seconds
        python: Interpreter used for the child process
    """

    def __init__(self, timeout: float = 10.0, python: str | None = None):
        self.timeout = timeout
        self.python = python or sys.executable

    def execute(self, code: str, params: dict[str, Any] | None = None) -> ScriptResult:
        """Run ``code`` with ``params`` bound read-only.

        Never raises for script problems; inspect ``ScriptResult.success``.
        """
        try:
            worker = build_worker(code, params or {})
        except (TypeError, ValueError) as e:
            return ScriptResult(success=False, error=f"Script params not serializable: {e}")

        try:
            proc = subprocess.run(
                [self.python, "-I", "-S", "-c", worker],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env={},
            )
        except subprocess.TimeoutExpired:
            return ScriptResult(success=False, error=f"Script timed out after {self.timeout}s")
        return parse_worker_output(proc.stdout, proc.stderr)
