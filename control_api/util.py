"""
Utility/helper functions.
"""

import datetime
import zlib
import orjson as json


def now_str():
    """
    Return current (UTC) timestamp as string.
    """
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def stable_hash(value: str) -> int:
    """
    Process independent hash of a string (python's hash() is salted per process).
    """
    return zlib.crc32(value.encode())


def dumps(data) -> str:
    """
    Serialize a payload (pydantic models included) for the wire.
    """
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json", by_alias=True)
    return json.dumps(data).decode()


def endpoint_key(protocol: str, name: str) -> str:
    """
    Environment-variable style key for a server, e.g. FTP_FTP_TEST_1.
    """
    return f"{protocol}_{name}".upper().replace("-", "_")
