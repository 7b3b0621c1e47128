"""
Directory registry for the outset queue.

The queue root holds one sub-directory per category. Each category has a
fixed privilege context, repeat policy and trigger kind:

    {root}/
    ├── boot-once/          # system, once,  lifecycle:boot
    ├── boot-every/         # system, every, lifecycle:boot
    ├── login-window/       # system, every, lifecycle:login
    ├── login-privileged/   # system, every, lifecycle:login
    ├── login-once/         # user,   once,  lifecycle:login
    ├── login-every/        # user,   every, lifecycle:login
    └── on-demand/          # user,   every, external-signal

Everything here is read-only except ensure_layout(), which is used at
install time.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Set, Union

from outset.errors import CategoryNotFound, InvalidRoot

logger = logging.getLogger(__name__)

# Privilege contexts
SYSTEM = "system"
USER = "user"

# Repeat policies
ONCE = "once"
EVERY = "every"

# Trigger kinds
BOOT = "lifecycle:boot"
LOGIN = "lifecycle:login"
EXTERNAL_SIGNAL = "external-signal"

PACKAGE_SUFFIXES = (".pkg", ".mpkg")


@dataclass(frozen=True)
class Category:
    """A named queue directory sharing one context, policy and trigger."""
    name: str
    context: str  # 'system' or 'user'
    policy: str  # 'once' or 'every'
    trigger: str  # 'lifecycle:boot', 'lifecycle:login' or 'external-signal'

    @property
    def run_once(self) -> bool:
        return self.policy == ONCE

    def path(self, root: Union[str, Path]) -> Path:
        """Directory of this category under the given root."""
        return Path(root) / self.name


@dataclass(frozen=True)
class Unit:
    """A single script or installer package inside a category directory."""
    path: Path
    category: Category
    executable: bool

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def is_package(self) -> bool:
        return self.path.suffix.lower() in PACKAGE_SUFFIXES


CATEGORIES: Dict[str, Category] = {
    c.name: c
    for c in (
        Category("boot-once", SYSTEM, ONCE, BOOT),
        Category("boot-every", SYSTEM, EVERY, BOOT),
        Category("login-window", SYSTEM, EVERY, LOGIN),
        Category("login-privileged", SYSTEM, EVERY, LOGIN),
        Category("login-once", USER, ONCE, LOGIN),
        Category("login-every", USER, EVERY, LOGIN),
        Category("on-demand", USER, EVERY, EXTERNAL_SIGNAL),
    )
}


def get_category(name: str) -> Category:
    """
    Look up a category by name.

    Raises:
        CategoryNotFound: If the name is not a known category
    """
    try:
        return CATEGORIES[name]
    except KeyError:
        raise CategoryNotFound(f"Unknown category: {name}") from None


def _check_root(root: Union[str, Path]) -> Path:
    root = Path(root)
    if not root.exists():
        raise InvalidRoot(f"Queue root does not exist: {root}")
    if not root.is_dir():
        raise InvalidRoot(f"Queue root is not a directory: {root}")
    return root


def list_categories(root: Union[str, Path]) -> Set[Category]:
    """
    Return the known categories whose directory exists under root.

    Raises:
        InvalidRoot: If root does not exist or is not a directory
    """
    root = _check_root(root)
    found = {c for c in CATEGORIES.values() if c.path(root).is_dir()}
    missing = set(CATEGORIES.values()) - found
    if missing:
        logger.debug(f"Categories without a directory under {root}: "
                     f"{', '.join(sorted(c.name for c in missing))}")
    return found


def units_in(root: Union[str, Path], category: Union[str, Category]) -> List[Unit]:
    """
    Return the units of a category in execution order.

    Order is by filename (code-point order), with the full path as the
    tie-break. Modification times never influence the order. Hidden files
    and sub-directories are skipped.

    Raises:
        InvalidRoot: If root does not exist or is not a directory
        CategoryNotFound: If the category is unknown or has no directory
    """
    root = _check_root(root)
    if isinstance(category, str):
        category = get_category(category)

    directory = category.path(root)
    if not directory.is_dir():
        raise CategoryNotFound(f"No directory for category '{category.name}' under {root}")

    units = []
    for entry in directory.iterdir():
        if entry.name.startswith("."):
            continue
        if not entry.is_file():
            logger.debug(f"Skipping non-file entry: {entry}")
            continue
        units.append(Unit(
            path=entry.absolute(),
            category=category,
            executable=os.access(entry, os.X_OK),
        ))

    units.sort(key=lambda u: (u.path.name, str(u.path)))
    return units


def ensure_layout(root: Union[str, Path]) -> Path:
    """Create the root and every category directory if missing."""
    root = Path(root)
    for category in CATEGORIES.values():
        category.path(root).mkdir(parents=True, exist_ok=True)
    logger.info(f"Queue layout ready at {root}")
    return root
