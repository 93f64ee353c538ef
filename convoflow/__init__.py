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

"""Convoflow: a conversational workflow engine."""

from .ast import (
    AnyOf,
    ASTNode,
    BoolOp,
    Compare,
    EmptyCheck,
    ListLiteral,
    Literal,
    Not,
    PathRef,
    Predicate,
    Truthy,
)
from .config import ConvoflowConfig, EngineConfig, MongoDBConfig, load_config
from .loader import GraphLoader
from .parser import ConditionParser, ParseError, parse

__version__ = "0.4.2"

__all__ = [
    # Parser
    "ConditionParser",
    "ParseError",
    "parse",
    # Loader
    "GraphLoader",
    # Configuration
    "ConvoflowConfig",
    "EngineConfig",
    "MongoDBConfig",
    "load_config",
    # AST nodes
    "ASTNode",
    "Literal",
    "PathRef",
    "ListLiteral",
    "AnyOf",
    "Truthy",
    "Compare",
    "Predicate",
    "EmptyCheck",
    "Not",
    "BoolOp",
]
