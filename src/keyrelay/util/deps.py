from __future__ import annotations
from importlib.util import find_spec

# import name -> requirement to hand to pip, kept in step with pyproject.toml
REQUIRED = {
    "websockets": "websockets>=12",
    "fastapi": "fastapi>=0.110",
    "uvicorn": "uvicorn[standard]>=0.27",
    "cryptography": "cryptography>=41",
    "structlog": "structlog>=23.1",
    "pydantic": "pydantic>=2.5",
}


def check_dependencies() -> tuple[bool, list[str]]:
    """Report which runtime libraries cannot be found, without importing them."""
    missing = [req for mod, req in REQUIRED.items() if find_spec(mod) is None]
    return not missing, missing
