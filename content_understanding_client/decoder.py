import json
from typing import Any, Union

from content_understanding_client.errors import MalformedResponseError


def decode(raw_body: Union[bytes, str]) -> Any:
    """Parses a response body into plain dicts, lists and scalars.

    The tree is returned as-is: field sets vary per analyzer, so no schema is
    applied here.
    """
    if isinstance(raw_body, (bytes, bytearray)):
        try:
            raw_body = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedResponseError(f"Response body is not valid UTF-8: {e}") from e

    try:
        return json.loads(raw_body)
    except json.JSONDecodeError as e:
        snippet = raw_body[:200]
        raise MalformedResponseError(
            f"Response body is not valid JSON ({e.msg} at position {e.pos}): {snippet!r}"
        ) from e
