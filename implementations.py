import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_IMPLEMENTATIONS_FILE = os.path.join(
    os.path.dirname(os.path.abspath(__file__)), "implementations.json"
)


class Role(Enum):
    CLIENT = "client"
    SERVER = "server"
    BOTH = "both"

    def is_client(self) -> bool:
        return self in (Role.CLIENT, Role.BOTH)

    def is_server(self) -> bool:
        return self in (Role.SERVER, Role.BOTH)


@dataclass(frozen=True)
class Implementation:
    name: str
    image: str
    role: Role
    url: Optional[str] = None


def _reject_duplicate_keys(pairs: List[Tuple[str, object]]) -> Dict[str, object]:
    obj: Dict[str, object] = {}
    for key, value in pairs:
        if key in obj:
            raise ValueError("duplicate implementation %r" % key)
        obj[key] = value
    return obj


def parse_implementations(text: str) -> List[Implementation]:
    data = json.loads(text, object_pairs_hook=_reject_duplicate_keys)
    if not isinstance(data, dict):
        raise ValueError("implementation catalog must be a JSON object")

    implementations = []
    for name, entry in data.items():
        try:
            role = Role(entry["role"])
        except ValueError:
            raise ValueError("unknown role %r for %s" % (entry["role"], name))
        except (KeyError, TypeError):
            raise ValueError("implementation %s declares no role" % name)
        if not entry.get("image"):
            raise ValueError("implementation %s declares no image" % name)
        implementations.append(
            Implementation(name=name, image=entry["image"], role=role, url=entry.get("url"))
        )
    return implementations


def load_implementations(path: str = DEFAULT_IMPLEMENTATIONS_FILE) -> List[Implementation]:
    with open(path, "r", encoding="utf-8") as fp:
        implementations = parse_implementations(fp.read())
    logger.debug("Loaded %d implementations from %s", len(implementations), path)
    return implementations


def replace_image(
    implementations: List[Implementation], name: str, image: str
) -> List[Implementation]:
    if name not in {impl.name for impl in implementations}:
        raise ValueError("cannot replace image of unknown implementation %s" % name)
    return [
        Implementation(impl.name, image, impl.role, impl.url) if impl.name == name else impl
        for impl in implementations
    ]


def servers(implementations: List[Implementation]) -> List[Implementation]:
    return [impl for impl in implementations if impl.role.is_server()]


def clients(implementations: List[Implementation]) -> List[Implementation]:
    return [impl for impl in implementations if impl.role.is_client()]
