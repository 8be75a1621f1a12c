"""Catalog tree, remote row types and the caller role."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class Platform(str, Enum):
    GFG = "GFG"
    LEETCODE = "LeetCode"
    HACKERRANK = "HackerRank"
    CODEFORCES = "Codeforces"

    @classmethod
    def parse(cls, value: Any) -> "Platform":
        try:
            return cls(value)
        except ValueError:
            return cls.LEETCODE

    @property
    def label(self) -> str:
        return "GfG" if self is Platform.GFG else self.value


class Difficulty(str, Enum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"

    @classmethod
    def parse(cls, value: Any) -> "Difficulty":
        try:
            return cls(value)
        except ValueError:
            return cls.EASY


@dataclass(frozen=True)
class Problem:
    id: str
    title: str
    url: str = ""
    platform: Platform = Platform.LEETCODE
    difficulty: Difficulty = Difficulty.EASY
    completed: bool = False
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "platform": self.platform.value,
            "difficulty": self.difficulty.value,
            "completed": self.completed,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Problem":
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or ""),
            url=str(payload.get("url") or ""),
            platform=Platform.parse(payload.get("platform")),
            difficulty=Difficulty.parse(payload.get("difficulty")),
            completed=bool(payload.get("completed", False)),
            note=payload.get("note") or "",
        )


@dataclass(frozen=True)
class Category:
    id: str
    title: str
    order_index: int = 0
    problems: List[Problem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "order_index": self.order_index,
            "problems": [problem.to_dict() for problem in self.problems],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Category":
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or ""),
            order_index=int(payload.get("order_index", 0) or 0),
            problems=[Problem.from_dict(item) for item in payload.get("problems", []) or []],
        )

    def with_problems(self, problems: Iterable[Problem]) -> "Category":
        return replace(self, problems=list(problems))


def categories_to_payload(categories: Iterable[Category]) -> List[Dict[str, Any]]:
    return [category.to_dict() for category in categories]


def categories_from_payload(payload: Any) -> List[Category]:
    if not isinstance(payload, list):
        raise ValueError("Catalog payload must be a list of categories")
    return [Category.from_dict(item) for item in payload]


# Remote rows -----------------------------------------------------------


@dataclass(frozen=True)
class CategoryRow:
    id: str
    title: str
    order_index: int
    user_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "order_index": self.order_index, "user_id": self.user_id}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CategoryRow":
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or ""),
            order_index=int(payload.get("order_index", 0) or 0),
            user_id=str(payload.get("user_id") or ""),
        )


@dataclass(frozen=True)
class ProblemRow:
    id: str
    category_id: str
    title: str
    url: str
    platform: Platform
    difficulty: Difficulty
    completed: bool
    note: str
    user_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "title": self.title,
            "url": self.url,
            "platform": self.platform.value,
            "difficulty": self.difficulty.value,
            "completed": self.completed,
            "note": self.note,
            "user_id": self.user_id,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ProblemRow":
        return cls(
            id=str(payload["id"]),
            category_id=str(payload.get("category_id") or ""),
            title=str(payload.get("title") or ""),
            url=str(payload.get("url") or ""),
            platform=Platform.parse(payload.get("platform")),
            difficulty=Difficulty.parse(payload.get("difficulty")),
            completed=bool(payload.get("completed", False)),
            note=payload.get("note") or "",
            user_id=str(payload.get("user_id") or ""),
        )

    def to_problem(self, completed: Optional[bool] = None, note: Optional[str] = None) -> Problem:
        return Problem(
            id=self.id,
            title=self.title,
            url=self.url,
            platform=self.platform,
            difficulty=self.difficulty,
            completed=self.completed if completed is None else completed,
            note=self.note if note is None else note,
        )


@dataclass(frozen=True)
class ProgressOverlay:
    """A sub-user's own completion state for one catalog problem."""

    user_id: str
    problem_id: str
    completed: bool = False
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "problem_id": self.problem_id,
            "completed": self.completed,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ProgressOverlay":
        return cls(
            user_id=str(payload["user_id"]),
            problem_id=str(payload["problem_id"]),
            completed=bool(payload.get("completed", False)),
            note=payload.get("note") or "",
        )


# Identity --------------------------------------------------------------


@dataclass(frozen=True)
class Session:
    user_id: str
    email: str = ""
    token: Optional[str] = None


class RoleKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    ADMIN = "admin"
    SUBUSER = "subuser"


@dataclass(frozen=True)
class Role:
    """Who is calling, resolved once and passed explicitly to load/save."""

    kind: RoleKind
    user_id: Optional[str] = None

    @classmethod
    def unauthenticated(cls) -> "Role":
        return cls(RoleKind.UNAUTHENTICATED)

    @classmethod
    def admin(cls, user_id: str) -> "Role":
        return cls(RoleKind.ADMIN, user_id)

    @classmethod
    def subuser(cls, user_id: str) -> "Role":
        return cls(RoleKind.SUBUSER, user_id)

    @property
    def is_admin(self) -> bool:
        return self.kind is RoleKind.ADMIN

    @property
    def is_authenticated(self) -> bool:
        return self.kind is not RoleKind.UNAUTHENTICATED
