"""
Per-lesson permission model and the access check every lesson operation passes.

Levels:
    none < read < read-write (total order). The owner always holds
    read-write; other accounts hold whatever explicit grant exists, and no
    grant means `none`.

Capability:
    `check()` is the only way to obtain a `LessonGrant`. Lesson service
    entry points accept a grant instead of a raw lesson id, so a handler that
    skipped the gate has nothing to pass in. Constructing a grant directly
    raises `TypeError`.
"""
from __future__ import annotations

from enum import IntEnum
from typing import Optional, Protocol

from scheduling.errors import InsufficientPermission, LessonNotFound


class PermissionLevel(IntEnum):
    NONE = 0
    READ = 1
    READ_WRITE = 2

    @property
    def wire(self) -> str:
        return _WIRE_NAMES[self]

    @classmethod
    def from_wire(cls, value: object) -> "PermissionLevel":
        for level, name in _WIRE_NAMES.items():
            if value == name:
                return level
        raise ValueError("invalid_permission_level")


_WIRE_NAMES = {
    PermissionLevel.NONE: "none",
    PermissionLevel.READ: "read",
    PermissionLevel.READ_WRITE: "read-write",
}


class PermissionRepoProtocol(Protocol):
    def lesson_owner(self, lesson_id: str) -> Optional[str]:
        """Owner account id, or None when the lesson does not exist."""
        ...

    def explicit_permission(self, lesson_id: str, account_id: str) -> Optional[PermissionLevel]:
        ...


_ISSUER = object()


class LessonGrant:
    """Proof that `account_id` passed the gate for `lesson_id` at `level`.

    Immutable and not copyable: there is no way to derive a grant for another
    lesson or a higher level from an existing one.
    """

    __slots__ = ("lesson_id", "account_id", "level", "is_owner")

    def __init__(
        self,
        lesson_id: str,
        account_id: str,
        level: PermissionLevel,
        is_owner: bool = False,
        *,
        _issuer: object = None,
    ) -> None:
        if _issuer is not _ISSUER:
            raise TypeError("LessonGrant is issued by scheduling.permissions.check only")
        object.__setattr__(self, "lesson_id", lesson_id)
        object.__setattr__(self, "account_id", account_id)
        object.__setattr__(self, "level", level)
        object.__setattr__(self, "is_owner", is_owner)

    def __setattr__(self, name: str, value: object) -> None:
        raise AttributeError("LessonGrant is immutable")

    def __delattr__(self, name: str) -> None:
        raise AttributeError("LessonGrant is immutable")

    def __reduce_ex__(self, protocol):
        # Blocks copy.copy, copy.deepcopy and pickle.
        raise TypeError("LessonGrant cannot be copied")

    def __repr__(self) -> str:
        return f"LessonGrant(lesson_id={self.lesson_id!r}, account_id={self.account_id!r}, level={self.level.wire!r})"

    def require(self, required: PermissionLevel) -> None:
        if self.level < required:
            raise InsufficientPermission(self.lesson_id, self.account_id)


def check(
    repo: PermissionRepoProtocol,
    account_id: str,
    lesson_id: str,
    required: PermissionLevel,
) -> LessonGrant:
    """Admit the caller or raise `LessonNotFound` / `InsufficientPermission`."""
    owner = repo.lesson_owner(lesson_id)
    if owner is None:
        raise LessonNotFound(lesson_id, account_id)
    if owner == account_id:
        level = PermissionLevel.READ_WRITE
    else:
        level = repo.explicit_permission(lesson_id, account_id) or PermissionLevel.NONE
    if level < required:
        raise InsufficientPermission(lesson_id, account_id)
    return LessonGrant(
        lesson_id=lesson_id,
        account_id=account_id,
        level=level,
        is_owner=owner == account_id,
        _issuer=_ISSUER,
    )


__all__ = [
    "PermissionLevel",
    "PermissionRepoProtocol",
    "LessonGrant",
    "check",
]
