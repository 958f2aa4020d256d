"""URL-encoded payload fields as written by pgq.logutriga.

``id=1&name=foo%20bar&flag`` decodes to ``{"id": "1", "name": "foo bar",
"flag": None}``: a pair without ``=`` stands for a NULL column. Empty
pairs are skipped on decode, so column names must not be empty.
"""
from typing import Dict, Mapping, Optional
from urllib.parse import quote_plus, unquote_plus

Payload = Dict[str, Optional[str]]


def decode_payload(data: Optional[str]) -> Payload:
    decoded: Payload = {}
    if not data:
        return decoded

    for pair in data.split("&"):
        if not pair:
            continue
        key, sep, value = pair.partition("=")
        decoded[unquote_plus(key)] = unquote_plus(value) if sep else None
    return decoded


def encode_payload(payload: Mapping[str, Optional[object]]) -> str:
    pairs = []
    for key, value in payload.items():
        if not key:
            raise ValueError("payload keys must not be empty")
        if value is None:
            pairs.append(quote_plus(key))
        else:
            pairs.append(f"{quote_plus(key)}={quote_plus(str(value))}")
    return "&".join(pairs)
