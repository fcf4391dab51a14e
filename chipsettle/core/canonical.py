"""
chipsettle/core/canonical.py

Canonical JSON (RFC 8785 / JCS) for proof checksums and signatures.

Everything that is hashed or signed goes through this module, so two
machines that build the same proof content always agree on its checksum.
Decimal amounts must already be strings (every to_dict() in the package
does this); floats are not allowed into money fields.
"""

import hashlib
from typing import Any

try:
    import jcs as _jcs
except ImportError as exc:
    raise ImportError(
        "chipsettle requires the 'jcs' package for RFC 8785 canonical JSON.\n"
        "Install with: pip install jcs\n"
        f"Original error: {exc}"
    ) from exc


def canonicalize(obj: Any) -> bytes:
    """UTF-8 canonical JSON bytes, independent of key insertion order."""
    return _jcs.canonicalize(obj)


def canonical_hash(obj: Any) -> str:
    """Lowercase hex SHA-256 of the canonical form."""
    return hashlib.sha256(canonicalize(obj)).hexdigest()


def short_hash(obj: Any, length: int = 16) -> str:
    """Truncated canonical hash, used as cache fingerprint."""
    return canonical_hash(obj)[:length]
