import inspect
import json
import socket
from pathlib import Path

import httpx
import pytest
import redis

VIOLATIONS = []
ARTIFACTS_DIR = Path("artifacts")
ARTIFACTS_DIR.mkdir(parents=True, exist_ok=True)
REPORT = ARTIFACTS_DIR / "egress-violations.json"

# Test modules may open sockets themselves (e.g. MockTransport-backed clients)
ALLOWED_CALLERS = ("/tests/",)


def _called_from_tests() -> bool:
    for frame in inspect.stack():
        filename = (frame.filename or "").replace("\\", "/")
        if any(path in filename for path in ALLOWED_CALLERS):
            return True
    return False


def _blocked(name: str, real, describe):
    def guard(*args, **kwargs):
        if _called_from_tests():
            return real(*args, **kwargs)
        VIOLATIONS.append({"fn": name, "target": describe(args)})
        raise RuntimeError(f"Egress blocked: {name} disallowed")

    return guard


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    """Block network egress from library code.

    Bank data clients get an httpx MockTransport and dispatch locks an
    in-memory store; anything reaching for DNS, a socket, a real httpx
    client or a Redis server from outside the test modules is a bug.
    """
    patched = [
        (socket, "getaddrinfo", lambda a: str(a[0]) if a else ""),
        (socket, "create_connection", lambda a: str(a[0]) if a else ""),
        (httpx.Client, "__init__", lambda a: "httpx.Client"),
        (redis.Redis, "execute_command", lambda a: str(a[1]) if len(a) > 1 else ""),
    ]
    originals = [(owner, attr, getattr(owner, attr)) for owner, attr, _ in patched]

    for owner, attr, describe in patched:
        setattr(owner, attr, _blocked(f"{getattr(owner, '__name__', owner)}.{attr}", getattr(owner, attr), describe))

    yield

    for owner, attr, real in originals:
        setattr(owner, attr, real)

    REPORT.write_text(json.dumps(VIOLATIONS, indent=2))
