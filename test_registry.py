"""Tests for the directory registry."""

import pytest

from outset.errors import CategoryNotFound, InvalidRoot
from outset.registry import (
    CATEGORIES, EVERY, ONCE, SYSTEM, USER, get_category, list_categories, units_in,
)


def test_every_category_has_one_context_and_policy():
    assert set(CATEGORIES) == {
        "boot-once", "boot-every", "login-once", "login-every",
        "login-privileged", "login-window", "on-demand",
    }
    for category in CATEGORIES.values():
        assert category.context in (SYSTEM, USER)
        assert category.policy in (ONCE, EVERY)

    assert get_category("boot-once").run_once
    assert not get_category("login-every").run_once
    assert get_category("login-privileged").context == SYSTEM
    assert get_category("on-demand").context == USER


def test_list_categories(queue_root):
    assert list_categories(queue_root) == set(CATEGORIES.values())

    (queue_root / "on-demand").rmdir()
    assert get_category("on-demand") not in list_categories(queue_root)


def test_invalid_root(tmp_path):
    with pytest.raises(InvalidRoot):
        list_categories(tmp_path / "missing")

    not_a_dir = tmp_path / "file"
    not_a_dir.write_text("")
    with pytest.raises(InvalidRoot):
        units_in(not_a_dir, "boot-once")


def test_unknown_category(queue_root):
    with pytest.raises(CategoryNotFound):
        units_in(queue_root, "boot-sometimes")

    (queue_root / "login-window").rmdir()
    with pytest.raises(CategoryNotFound):
        units_in(queue_root, "login-window")


def test_units_are_ordered_by_filename(queue_root, make_script):
    for name in ("10-c", "02-b", "01-a"):
        make_script("boot-every", name)

    units = units_in(queue_root, "boot-every")
    assert [u.name for u in units] == ["01-a", "02-b", "10-c"]
    assert all(u.path.is_absolute() for u in units)
    assert all(u.category.name == "boot-every" for u in units)


def test_hidden_files_and_directories_are_skipped(queue_root, make_script):
    make_script("login-every", "script.sh")
    make_script("login-every", "plain.txt", executable=False)
    (queue_root / "login-every" / ".DS_Store").write_text("")
    (queue_root / "login-every" / "nested").mkdir()

    units = units_in(queue_root, "login-every")
    assert [u.name for u in units] == ["plain.txt", "script.sh"]
    assert {u.name: u.executable for u in units} == {"plain.txt": False, "script.sh": True}


def test_packages_are_recognized(queue_root):
    (queue_root / "boot-once" / "Tool.pkg").write_bytes(b"xar!")
    (unit,) = units_in(queue_root, "boot-once")
    assert unit.is_package
