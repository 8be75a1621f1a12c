"""Helpers over the catalog tree and the bundled first-run sample."""

from __future__ import annotations

import random
import secrets
import string
from typing import Dict, Iterable, List, Optional

from .models import Category, Difficulty, Platform, Problem

_ID_ALPHABET = string.ascii_lowercase + string.digits

SAMPLE_CATALOG_PAYLOAD: List[Dict[str, object]] = [
    {
        "id": "default-1",
        "title": "Sample Problems",
        "order_index": 0,
        "problems": [
            {
                "id": "p1",
                "title": "Two Sum",
                "url": "https://leetcode.com/problems/two-sum/",
                "platform": "LeetCode",
                "difficulty": "Easy",
                "completed": False,
                "note": "",
            },
            {
                "id": "p2",
                "title": "Add Two Numbers",
                "url": "https://leetcode.com/problems/add-two-numbers/",
                "platform": "LeetCode",
                "difficulty": "Medium",
                "completed": False,
                "note": "",
            },
        ],
    }
]


def sample_catalog() -> List[Category]:
    """Fresh copy of the catalog shown to a first-run user with no cache."""
    return [Category.from_dict(item) for item in SAMPLE_CATALOG_PAYLOAD]


def generate_id(prefix: str = "id") -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))
    return f"{prefix}_{suffix}"


def flatten_problems(categories: Iterable[Category]) -> List[Problem]:
    return [problem for category in categories for problem in category.problems]


def count_completed(problems: Iterable[Problem]) -> int:
    return sum(1 for problem in problems if problem.completed)


def progress_summary(categories: Iterable[Category]) -> Dict[str, int]:
    problems = flatten_problems(categories)
    done = count_completed(problems)
    total = len(problems)
    pct = round(done * 100 / total) if total else 0
    return {"all": total, "done": done, "pct": pct}


def filter_categories(
    categories: Iterable[Category],
    search: str = "",
    difficulty: Optional[Difficulty] = None,
) -> List[Category]:
    """Keep every category, narrowing its problems by title search and difficulty."""
    needle = search.strip().lower()
    result = []
    for category in categories:
        problems = [
            problem for problem in category.problems
            if (not needle or needle in problem.title.lower())
            and (difficulty is None or problem.difficulty is difficulty)
        ]
        result.append(category.with_problems(problems))
    return result


def random_unsolved(categories: Iterable[Category], rng: Optional[random.Random] = None) -> Optional[Problem]:
    pending = [problem for problem in flatten_problems(categories) if not problem.completed]
    if not pending:
        return None
    return (rng or random).choice(pending)


def new_problem(
    title: str,
    url: str = "",
    platform: Platform = Platform.LEETCODE,
    difficulty: Difficulty = Difficulty.EASY,
) -> Problem:
    return Problem(id=generate_id("p"), title=title.strip(), url=url.strip(), platform=platform, difficulty=difficulty)
