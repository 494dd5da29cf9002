"""Proof helper contracts and shared template handling.

A proof helper decides what a login or signup proof request asks for and
whether the answer is acceptable:

    ProofHelper   : get_proof_schema() + check_proof()
    SignupHelper  : ProofHelper + proof_to_user_record()

Implementations live in ``file_helper`` (file-backed and null helpers) and
``account`` (the bank's DMV + HR account signup helper).
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger("ssi_demo.helpers")


@runtime_checkable
class ProofHelper(Protocol):
    async def get_proof_schema(self, restrictions: list[dict] | None = None) -> dict[str, Any]: ...

    async def check_proof(self, verification: dict[str, Any], user_record: dict[str, Any] | None = None) -> Any: ...


@runtime_checkable
class SignupHelper(ProofHelper, Protocol):
    async def proof_to_user_record(self, verification: dict[str, Any]) -> dict[str, Any]: ...


def check_template_path(path: str) -> Path:
    """Validate a proof schema template path at construction time."""
    if not path or not isinstance(path, str):
        raise ValueError("Invalid path to proof schema file")
    p = Path(path)
    if p.suffix.lower() != ".json":
        raise ValueError(f"File {path} is not a json file!")
    if not p.exists():
        raise ValueError(f"File {path} does not exist")
    return p


async def load_template(path: Path) -> dict[str, Any]:
    logger.info("Loading proof schema: %s", path)
    raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
    template = json.loads(raw)
    if not template.get("name") or not template.get("version"):
        raise ValueError(f"Invalid proof schema {path}: name and version are required")
    return template


def stamp_version(template: dict[str, Any]) -> dict[str, Any]:
    """Deep copy of *template* with a unique version.

    Agents refuse to publish two proof schemas with the same name and version.
    """
    stamped = copy.deepcopy(template)
    stamped["version"] = f"{stamped['version']}{int(time.time() * 1000)}"
    return stamped


def normalize_attr_name(name: str) -> str:
    """Indy lowercases and strips spaces from attribute names in proof responses."""
    return name.lower().replace(" ", "")


def normalize_value(value: Any) -> str:
    return "".join(str(value).split()).lower()


def proof_attributes(verification: dict[str, Any] | None) -> list[dict[str, Any]]:
    """The disclosed attributes of a verification, or TypeError if it has none."""
    info = (verification or {}).get("info") or {}
    attributes = info.get("attributes")
    if not isinstance(attributes, list):
        raise TypeError("No attributes found in given verification")
    return attributes
