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

"""Convoflow configuration management.

Provides configuration dataclasses for the engine and its MongoDB store,
and a loader that reads from config files or environment variables.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any
from urllib.parse import quote_plus


@dataclass
class MongoDBConfig:
    """MongoDB connection configuration.

    Attributes:
        url: MongoDB connection URL
        username: Authentication username
        password: Authentication password
        auth_source: Authentication database name
        database: Target database name (e.g. "convoflow", "convoflow_test")
    """

    url: str = "mongodb://localhost:27017"
    username: str = ""
    password: str = ""
    auth_source: str = "admin"
    database: str = "convoflow"

    def connection_string(self) -> str:
        """Build the effective connection string.

        Credentials given separately are inserted into a URL that has none.
        """
        if not self.username or "@" in self.url:
            return self.url
        scheme, sep, rest = self.url.partition("://")
        if not sep:
            return self.url
        creds = f"{quote_plus(self.username)}:{quote_plus(self.password)}@"
        joiner = "&" if "?" in rest else ("?" if "/" in rest else "/?")
        return f"{scheme}://{creds}{rest}{joiner}authSource={self.auth_source}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MongoDBConfig:
        """Create from a dictionary.

        Keys may use either snake_case (``auth_source``) or
        camelCase (``authSource``).
        """
        return cls(
            url=data.get("url", cls.url),
            username=data.get("username", cls.username),
            password=data.get("password", cls.password),
            auth_source=data.get("auth_source", data.get("authSource", cls.auth_source)),
            database=data.get("database", cls.database),
        )

    @classmethod
    def from_env(cls) -> MongoDBConfig:
        """Create from environment variables.

        Recognised variables (all optional – defaults apply for missing vars):
            CONVOFLOW_MONGODB_URL
            CONVOFLOW_MONGODB_USERNAME
            CONVOFLOW_MONGODB_PASSWORD
            CONVOFLOW_MONGODB_AUTH_SOURCE
            CONVOFLOW_MONGODB_DATABASE
        """
        defaults = cls()
        return cls(
            url=os.environ.get("CONVOFLOW_MONGODB_URL", defaults.url),
            username=os.environ.get("CONVOFLOW_MONGODB_USERNAME", defaults.username),
            password=os.environ.get("CONVOFLOW_MONGODB_PASSWORD", defaults.password),
            auth_source=os.environ.get("CONVOFLOW_MONGODB_AUTH_SOURCE", defaults.auth_source),
            database=os.environ.get("CONVOFLOW_MONGODB_DATABASE", defaults.database),
        )


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class EngineConfig:
    """Orchestrator limits and timings.

    Attributes:
        max_steps: Nodes one start/resume call may execute before the run fails
        max_interactions: Inbound replies after which a run is force-completed
        run_ttl_hours: Lifetime of a run before the sweep expires it
        lock_ttl_seconds: Conversation mutex TTL
        wait_reply_timeout_seconds: Reply timeout when a node sets none
        sweep_interval_seconds: Pause between expiry sweeps
        timer_lock_retry_seconds: Pause between mutex attempts in timer callbacks
        timer_lock_retries: Mutex attempts before a timer gives up
        script_timeout_seconds: RUN_SCRIPT wall-clock limit
        http_timeout_seconds: HTTP_REQUEST timeout when a node sets none
    """

    max_steps: int = 100
    max_interactions: int = 20
    run_ttl_hours: float = 24.0
    lock_ttl_seconds: float = 30.0
    wait_reply_timeout_seconds: float = 300.0
    sweep_interval_seconds: float = 60.0
    timer_lock_retry_seconds: float = 1.0
    timer_lock_retries: int = 3
    script_timeout_seconds: float = 10.0
    http_timeout_seconds: float = 15.0

    @property
    def run_ttl_ms(self) -> int:
        return int(self.run_ttl_hours * 3600 * 1000)

    @property
    def lock_ttl_ms(self) -> int:
        return int(self.lock_ttl_seconds * 1000)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """Create from a dictionary with snake_case or camelCase keys."""
        values: dict[str, Any] = {}
        for f in fields(cls):
            for key in (f.name, _camel(f.name)):
                if key in data:
                    values[f.name] = type(f.default)(data[key])
                    break
        return cls(**values)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Create from environment variables.

        Recognised variables (all optional):
            CONVOFLOW_MAX_STEPS, CONVOFLOW_MAX_INTERACTIONS,
            CONVOFLOW_RUN_TTL_HOURS, CONVOFLOW_LOCK_TTL_SECONDS,
            CONVOFLOW_WAIT_REPLY_TIMEOUT_SECONDS, CONVOFLOW_SWEEP_INTERVAL_SECONDS,
            CONVOFLOW_TIMER_LOCK_RETRY_SECONDS, CONVOFLOW_TIMER_LOCK_RETRIES,
            CONVOFLOW_SCRIPT_TIMEOUT_SECONDS, CONVOFLOW_HTTP_TIMEOUT_SECONDS
        """
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = os.environ.get(f"CONVOFLOW_{f.name.upper()}")
            if raw:
                number = float(raw)
                values[f.name] = int(number) if isinstance(f.default, int) else number
        return cls(**values)


@dataclass
class ConvoflowConfig:
    """Top-level Convoflow configuration.

    Attributes:
        mongodb: MongoDB connection settings
        engine: Orchestrator limits and timings
    """

    mongodb: MongoDBConfig = field(default_factory=MongoDBConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return {
            "mongodb": self.mongodb.to_dict(),
            "engine": self.engine.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConvoflowConfig:
        """Create from a dictionary (e.g. parsed JSON)."""
        return cls(
            mongodb=MongoDBConfig.from_dict(data.get("mongodb", {})),
            engine=EngineConfig.from_dict(data.get("engine", {})),
        )

    @classmethod
    def from_env(cls) -> ConvoflowConfig:
        """Create from environment variables."""
        return cls(
            mongodb=MongoDBConfig.from_env(),
            engine=EngineConfig.from_env(),
        )


# -- Config file loading -----------------------------------------------------

DEFAULT_CONFIG_FILENAME = "convoflow.config.json"

_SEARCH_PATHS = [
    Path.cwd,  # current directory
    lambda: Path.home() / ".convoflow",  # user home
    lambda: Path("/etc/convoflow"),  # system-wide
]


def _find_config_file(filename: str = DEFAULT_CONFIG_FILENAME) -> Path | None:
    """Search well-known locations for a config file.

    Search order:
        1. ``$CONVOFLOW_CONFIG`` environment variable (explicit path)
        2. Current working directory
        3. ``~/.convoflow/``
        4. ``/etc/convoflow/``

    Returns:
        Path to the first config file found, or ``None``.
    """
    explicit = os.environ.get("CONVOFLOW_CONFIG")
    if explicit:
        path = Path(explicit)
        if path.is_file():
            return path
        return None

    for path_fn in _SEARCH_PATHS:
        candidate = path_fn() / filename
        if candidate.is_file():
            return candidate
    return None


def load_config(path: str | Path | None = None) -> ConvoflowConfig:
    """Load Convoflow configuration.

    Resolution order:
        1. Explicit *path* argument
        2. Config file found via :func:`_find_config_file`
        3. Environment variables (``CONVOFLOW_*``)
        4. Built-in defaults

    Args:
        path: Optional explicit path to a JSON config file.

    Returns:
        Populated :class:`ConvoflowConfig` instance.
    """
    config_path: Path | None = Path(path) if path else _find_config_file()

    if config_path and config_path.is_file():
        data = json.loads(config_path.read_text())
        return ConvoflowConfig.from_dict(data)

    # Fall back to env vars / defaults
    return ConvoflowConfig.from_env()
