"""
Library linking for templated contract bytecode

solc leaves a placeholder of the form ``__$<34 hex digits>$__`` wherever a
library address must go. The hex part is the first 17 bytes of the keccak256
hash of the library's fully qualified name.
"""

import re
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from eth_utils import keccak

from .errors import LinkError, MalformedTemplate, UnresolvedPlaceholder

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "__$"
PLACEHOLDER_SUFFIX = "$__"
PLACEHOLDER_BODY_LENGTH = 34
PLACEHOLDER_RE = re.compile(r"__\$[0-9a-fA-F]{34}\$__")
# Longest body scanned before a placeholder is declared unterminated
MAX_BODY_SCAN = 64
ADDRESS_HEX_RE = re.compile(r"[0-9a-fA-F]{40}")


@dataclass
class LinkPlaceholder:
    token: str
    resolved_address: Optional[str] = None


def placeholder_for(fully_qualified_name: str) -> str:
    """
    Compute the placeholder solc emits for a library.

    Args:
        fully_qualified_name: ``<source path>:<library name>``

    Returns:
        The 40 character placeholder token
    """
    digest = keccak(text=fully_qualified_name).hex()
    return f"{PLACEHOLDER_PREFIX}{digest[:PLACEHOLDER_BODY_LENGTH]}{PLACEHOLDER_SUFFIX}"


def _check_token(token: str):
    if not PLACEHOLDER_RE.fullmatch(token):
        raise MalformedTemplate(token)


def find_placeholders(template: str) -> List[str]:
    """Return the distinct placeholder tokens of a template, in order of first appearance"""
    tokens: List[str] = []
    pos = 0
    while True:
        start = template.find(PLACEHOLDER_PREFIX, pos)
        if start == -1:
            return tokens
        body_start = start + len(PLACEHOLDER_PREFIX)
        end = template.find(PLACEHOLDER_SUFFIX, body_start, body_start + MAX_BODY_SCAN + len(PLACEHOLDER_SUFFIX))
        if end == -1:
            raise MalformedTemplate(template[start:body_start + MAX_BODY_SCAN])
        token = template[start:end + len(PLACEHOLDER_SUFFIX)]
        _check_token(token)
        if token not in tokens:
            tokens.append(token)
        pos = end + len(PLACEHOLDER_SUFFIX)


def _address_hex(address: str) -> str:
    value = address[2:] if address[:2] in ("0x", "0X") else address
    if not ADDRESS_HEX_RE.fullmatch(value):
        raise LinkError(f"Cannot link to invalid address {address!r}")
    return value.lower()


def link(template: str, dependency_addresses: Mapping[str, str]) -> str:
    """
    Replace every placeholder in a template with its library address.

    Args:
        template: Hex bytecode, possibly containing placeholders
        dependency_addresses: Placeholder token -> deployed library address

    Returns:
        Fully resolved bytecode; the template itself when it has no placeholders
    """
    for token in dependency_addresses:
        _check_token(token)

    placeholders = [LinkPlaceholder(token) for token in find_placeholders(template)]
    if not placeholders:
        return template

    for placeholder in placeholders:
        address = dependency_addresses.get(placeholder.token)
        if address is None:
            raise UnresolvedPlaceholder(placeholder.token)
        placeholder.resolved_address = _address_hex(address)

    payload = template
    for placeholder in placeholders:
        occurrences = payload.count(placeholder.token)
        payload = payload.replace(placeholder.token, placeholder.resolved_address)
        logger.debug(f"Linked {occurrences} occurrence(s) of {placeholder.token}")
    return payload


def dependency_map(link_references: Mapping[str, Mapping[str, Any]],
                   library_addresses: Mapping[str, str]) -> Dict[str, str]:
    """
    Build the placeholder -> address mapping from an artifact's linkReferences.

    Args:
        link_references: ``{source path: {library name: [offsets]}}``
        library_addresses: Library name -> deployed address

    Returns:
        Mapping suitable for ``link``; libraries without an address are skipped
    """
    mapping: Dict[str, str] = {}
    for source, libraries in link_references.items():
        for library in libraries:
            if library in library_addresses:
                mapping[placeholder_for(f"{source}:{library}")] = library_addresses[library]
    return mapping
