# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Input metadata redaction for the invocation ledger.

Callers send arbitrary payloads to protocol handlers. The ledger keeps only
a shallow description of each payload: its type and its outer shape. Raw
content, nested values and string contents never reach storage or logs.
"""


def redact(value) -> dict:
    """Describe a payload without retaining any of its content.

    - str -> {"type": "string", "length": <chars>}
    - bytes-like -> {"type": "buffer", "size": <bytes>}
    - dict -> {"type": "object", "keys": [<top-level keys>]}
    - list/tuple -> {"type": "object", "keys": ["0", "1", ...]}
    - anything else -> {"type": <python type name>}
    """
    if isinstance(value, str):
        return {"type": "string", "length": len(value)}
    if isinstance(value, (bytes, bytearray, memoryview)):
        size = value.nbytes if isinstance(value, memoryview) else len(value)
        return {"type": "buffer", "size": size}
    if isinstance(value, dict):
        return {"type": "object", "keys": [str(k) for k in value.keys()]}
    if isinstance(value, (list, tuple)):
        # Arrays describe as objects keyed by index, never by element
        return {"type": "object", "keys": [str(i) for i in range(len(value))]}
    return {"type": type(value).__name__}
