"""
Block catalog loading.

The catalog describes every content block a page can carry: its fields and
the prompt template used to generate it. It is read from YAML and reloaded
automatically when the file changes on disk.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..core.errors import UnknownBlockError

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).with_name("blocks.yaml")

FIELD_TYPES = {"text", "textarea", "repeater", "image", "url"}


@dataclass(frozen=True)
class FieldSpec:
    """One field of a block."""
    name: str
    type: str = "text"
    required: bool = False
    maxlength: Optional[int] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("field name cannot be empty")
        if self.type not in FIELD_TYPES:
            raise ValueError(f"field '{self.name}' has unknown type '{self.type}'")
        if self.maxlength is not None and self.maxlength <= 0:
            raise ValueError(f"field '{self.name}' maxlength must be > 0")


@dataclass(frozen=True)
class PromptTemplate:
    """System and user message templates with {placeholder} slots."""
    system: str
    user: str


@dataclass(frozen=True)
class BlockDefinition:
    """A content block: id, label, ordered fields and prompt template."""
    id: str
    label: str
    fields: Tuple[FieldSpec, ...]
    prompt: PromptTemplate
    order: int = 0
    enabled: bool = True

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]


def load_block_catalog(path: Optional[str] = None) -> Dict[str, BlockDefinition]:
    """Load and validate block definitions from a YAML file.

    Args:
        path: Catalog file; the packaged blocks.yaml when omitted

    Returns:
        Mapping of block id to BlockDefinition

    Raises:
        FileNotFoundError: If the catalog file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If a block definition is invalid
    """
    catalog_path = Path(path) if path else DEFAULT_CATALOG_PATH
    if not catalog_path.exists():
        raise FileNotFoundError(f"Block catalog not found: {catalog_path}")

    with open(catalog_path, 'r', encoding='utf-8') as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in block catalog {catalog_path}: {e}")

    if not isinstance(raw, dict):
        raise ValueError("Block catalog root must be a dictionary")

    unknown_keys = set(raw.keys()) - {"system_message", "blocks"}
    if unknown_keys:
        raise ValueError(f"Unknown block catalog keys: {unknown_keys}")

    default_system = raw.get("system_message", "")
    if not isinstance(default_system, str):
        raise ValueError("'system_message' must be a string")

    blocks = raw.get("blocks")
    if not isinstance(blocks, dict) or not blocks:
        raise ValueError("'blocks' must be a non-empty dictionary")

    return {
        block_id: _parse_block(block_id, data, position, default_system)
        for position, (block_id, data) in enumerate(blocks.items())
    }


def _parse_block(block_id: str, data: Any, position: int, default_system: str) -> BlockDefinition:
    path = f"blocks.{block_id}"
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed = {"label", "enabled", "fields", "prompt"}
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    enabled = data.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ValueError(f"'{path}.enabled' must be true or false")

    raw_fields = data.get("fields", [])
    if not isinstance(raw_fields, list):
        raise ValueError(f"'{path}.fields' must be a list")
    fields = []
    for item in raw_fields:
        if not isinstance(item, dict) or "name" not in item:
            raise ValueError(f"'{path}.fields' entries need a name")
        fields.append(FieldSpec(
            name=item["name"],
            type=item.get("type", "text"),
            required=bool(item.get("required", False)),
            maxlength=item.get("maxlength"),
        ))

    prompt = data.get("prompt")
    if not isinstance(prompt, dict) or not isinstance(prompt.get("user"), str):
        raise ValueError(f"'{path}.prompt.user' is required")
    system = prompt.get("system", default_system)
    if not isinstance(system, str):
        raise ValueError(f"'{path}.prompt.system' must be a string")

    return BlockDefinition(
        id=block_id,
        label=str(data.get("label", block_id.replace("_", " ").title())),
        fields=tuple(fields),
        prompt=PromptTemplate(system=system, user=prompt["user"]),
        order=position,
        enabled=enabled,
    )


class BlockCatalog:
    """Block definitions with hot reload.

    The file's modification time is checked on every lookup; a changed file
    is re-parsed. If the new file is invalid the previous definitions stay
    in use and the error is logged.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else DEFAULT_CATALOG_PATH
        self._mtime: Optional[float] = None
        self._blocks: Dict[str, BlockDefinition] = {}
        self._refresh()

    def _refresh(self) -> None:
        mtime = os.path.getmtime(self.path)
        if self._mtime is not None and mtime == self._mtime:
            return
        try:
            blocks = load_block_catalog(str(self.path))
        except (ValueError, yaml.YAMLError) as e:
            if self._mtime is None:
                raise
            logger.error("event=catalog.reload_failed | path=%s | error=%s", self.path, e)
            self._mtime = mtime
            return
        if self._mtime is not None:
            logger.info("event=catalog.reloaded | path=%s | blocks=%d", self.path, len(blocks))
        self._blocks = blocks
        self._mtime = mtime

    def get(self, block_id: str) -> BlockDefinition:
        """Return a block definition.

        Raises:
            UnknownBlockError: If the catalog has no such block
        """
        self._refresh()
        try:
            return self._blocks[block_id]
        except KeyError:
            raise UnknownBlockError(f"Unknown block type: {block_id}") from None

    def template(self, block_id: str) -> PromptTemplate:
        return self.get(block_id).prompt

    def block_ids(self) -> List[str]:
        self._refresh()
        return list(self._blocks)

    def default_order(self) -> List[str]:
        """Enabled blocks in catalog order."""
        self._refresh()
        blocks = sorted(self._blocks.values(), key=lambda b: b.order)
        return [b.id for b in blocks if b.enabled]

    def __contains__(self, block_id: str) -> bool:
        self._refresh()
        return block_id in self._blocks
