"""
Contract artifact resolution
Loads ABI and bytecode from compiled Hardhat / Foundry JSON artifacts
"""

import os
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ArtifactNotFound, InvalidArtifact
from .linker import find_placeholders

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArtifactDescriptor:
    """Resolved contract artifact; read-only once produced"""
    name: str
    interface_spec: Tuple[Dict[str, Any], ...]
    payload_template: str
    is_templated: bool
    link_references: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def abi(self):
        return list(self.interface_spec)


def _extract_bytecode(name: str, data: Mapping[str, Any]) -> str:
    # Hardhat stores a hex string, Foundry nests it under "object"
    bytecode = data.get('bytecode')
    if isinstance(bytecode, dict):
        bytecode = bytecode.get('object')
    if not isinstance(bytecode, str) or not bytecode or bytecode == '0x':
        raise InvalidArtifact(f"Bytecode not found or empty in artifact {name}")
    if not bytecode.startswith('0x'):
        bytecode = '0x' + bytecode
    return bytecode


def build_descriptor(name: str, data: Mapping[str, Any]) -> ArtifactDescriptor:
    """Validate raw artifact JSON and turn it into a descriptor"""
    abi = data.get('abi')
    if not isinstance(abi, list):
        raise InvalidArtifact(f"ABI not found in artifact {name}")
    payload = _extract_bytecode(name, data)
    link_references = data.get('linkReferences')
    if link_references is None and isinstance(data.get('bytecode'), dict):
        link_references = data['bytecode'].get('linkReferences')
    return ArtifactDescriptor(
        name=name,
        interface_spec=tuple(abi),
        payload_template=payload,
        is_templated=bool(find_placeholders(payload)),
        link_references=dict(link_references or {}),
    )


class ArtifactResolver:
    """
    Resolves contract names to artifact descriptors.

    Artifacts are looked up either in an explicit mapping of raw artifact JSON
    or under a directory tree, where ``<name>.json`` anywhere below the root
    matches (``artifacts/contracts/Foo.sol/Foo.json`` in a Hardhat build).
    Descriptors are cached so the same name always yields the same descriptor.
    """

    def __init__(self, artifacts_dir: Optional[str] = None,
                 artifacts: Optional[Mapping[str, Mapping[str, Any]]] = None):
        if artifacts_dir is None and artifacts is None:
            raise ValueError("Either artifacts_dir or artifacts must be given")
        self.artifacts_dir = artifacts_dir
        self._raw: Dict[str, Mapping[str, Any]] = dict(artifacts or {})
        self._cache: Dict[str, ArtifactDescriptor] = {}
        self._index: Optional[Dict[str, str]] = None

    @classmethod
    def from_mapping(cls, artifacts: Mapping[str, Mapping[str, Any]]) -> "ArtifactResolver":
        return cls(artifacts=artifacts)

    def resolve(self, name: str) -> ArtifactDescriptor:
        """Return the descriptor for ``name`` or raise ArtifactNotFound"""
        if name in self._cache:
            return self._cache[name]

        data = self._raw.get(name)
        if data is None:
            data = self._load_from_disk(name)
        descriptor = build_descriptor(name, data)
        self._cache[name] = descriptor
        logger.debug(f"Resolved artifact {name} (templated={descriptor.is_templated})")
        return descriptor

    def _load_from_disk(self, name: str) -> Mapping[str, Any]:
        if self.artifacts_dir is None:
            raise ArtifactNotFound(name)
        path = self._build_index().get(name)
        if path is None:
            raise ArtifactNotFound(name)
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise InvalidArtifact(f"Artifact {path} is not valid JSON: {e}") from e

    def _build_index(self) -> Dict[str, str]:
        if self._index is not None:
            return self._index
        index: Dict[str, str] = {}
        if self.artifacts_dir is None or not os.path.isdir(self.artifacts_dir):
            logger.warning(f"Artifacts directory does not exist: {self.artifacts_dir}")
            self._index = index
            return index
        for dirpath, dirnames, filenames in os.walk(self.artifacts_dir):
            dirnames.sort()
            for filename in sorted(filenames):
                # Hardhat writes .dbg.json files next to the artifacts
                if not filename.endswith('.json') or filename.endswith('.dbg.json'):
                    continue
                contract_name = filename[:-len('.json')]
                if contract_name in index:
                    logger.warning(
                        f"Duplicate artifact {contract_name}: keeping {index[contract_name]}"
                    )
                    continue
                index[contract_name] = os.path.join(dirpath, filename)
        self._index = index
        return index
