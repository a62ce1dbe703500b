from __future__ import annotations

import pytest

from workforce_audit.contracts.topology import snapshot_key, topic_matches


@pytest.mark.parametrize(
    "pattern,key,expected",
    [
        ("#", "employee.created", True),
        ("#", "leave.request.approved", True),
        ("employee.*", "employee.updated", True),
        ("employee.*", "employee.status.updated", False),
        ("*.created", "task.created", True),
        ("*.created", "leave.request.created", False),
        ("leave.#", "leave.request.rejected", True),
        ("leave.#", "leave", True),
        ("#.updated", "task.status.updated", True),
        ("project.#.added", "project.member.added", True),
        ("project.member.added", "project.member.removed", False),
    ],
)
def test_topic_matches(pattern: str, key: str, expected: bool) -> None:
    assert topic_matches(pattern, key) is expected


def test_snapshot_key_layout() -> None:
    assert snapshot_key("abc", "before") == "audit:abc:before"
    assert snapshot_key("abc", "after") == "audit:abc:after"
    with pytest.raises(ValueError):
        snapshot_key("abc", "during")
