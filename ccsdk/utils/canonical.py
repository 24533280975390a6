from typing import Any

import orjson


def canonical_bytes(d: Any) -> bytes:
    # sorted keys, no whitespace; the result is what gets signed and sent verbatim
    return orjson.dumps(d, option=orjson.OPT_SORT_KEYS)


def canonical_text(d: Any) -> str:
    return canonical_bytes(d).decode("utf-8")
