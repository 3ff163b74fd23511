from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from boilerhub.logging import get_logger
from boilerhub.storage.errors import ConstraintViolation
from boilerhub.storage.models import (
    BOILERPLATE_ORDER_FIELDS,
    DEFAULT_CATEGORIES,
    Boilerplate,
    BoilerplateFilter,
    BoilerplatePage,
    Category,
    Like,
    User,
)
from boilerhub.storage.search import matches_query, relevance_score

_BOILERPLATE_MUTABLE_FIELDS = {
    "title",
    "description",
    "repository_url",
    "framework",
    "language",
    "tags",
    "category_id",
}


class MemoryStore:
    """In-memory backing store used for tests and local development.

    Mirrors ``PostgresStore`` method for method, including keyset paging and
    trigram relevance, so services behave identically on both.
    """

    def __init__(self, fs_root: str = "/tmp/boilerhub") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.categories: Dict[str, Category] = {}
        self.boilerplates: Dict[str, Boilerplate] = {}
        self.likes: Dict[Tuple[str, str], Like] = {}
        # Re-entrant so helpers can call public getters under the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.default_categories()

    def default_categories(self) -> None:
        with self._data_lock:
            for seed in DEFAULT_CATEGORIES:
                if self.get_category_by_slug(seed["slug"]) is None:
                    self.create_category(**seed)

    def verify_connection(self) -> None:
        return None

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "user",
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                role=role,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return replace(user)
            return None

    def list_users(
        self, limit: int = 100, *, after: Optional[Tuple[datetime, str]] = None
    ) -> List[User]:
        """Users newest first; ``after`` is the (created_at, id) of the last row seen."""
        with self._data_lock:
            ordered = sorted(
                self.users.values(), key=lambda u: (u.created_at, u.id), reverse=True
            )
            if after is not None:
                anchor = (_naive(after[0]), after[1])
                ordered = [u for u in ordered if (_naive(u.created_at), u.id) < anchor]
            return [replace(u) for u in ordered[:limit]]

    def update_user_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if name is not None:
                user.name = name
            if meta is not None:
                user.meta = {**(user.meta or {}), **meta}
            user.updated_at = datetime.utcnow()
            return replace(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = datetime.utcnow()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            for key in [k for k in self.likes if k[0] == user_id]:
                self._drop_like(key)
            for bp_id in [b.id for b in self.boilerplates.values() if b.author_id == user_id]:
                self.delete_boilerplate(bp_id)
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # categories
    def create_category(
        self,
        name: str,
        slug: str,
        *,
        icon: Optional[str] = None,
        color: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Category:
        with self._data_lock:
            if self.get_category_by_slug(slug) is not None:
                raise ConstraintViolation("category slug already exists", {"field": "slug"})
            category = Category(
                id=str(uuid.uuid4()),
                name=name,
                slug=slug,
                icon=icon,
                color=color,
                description=description,
            )
            self.categories[category.id] = category
            return category

    def get_category(self, category_id: str) -> Optional[Category]:
        with self._data_lock:
            return self.categories.get(category_id)

    def get_category_by_slug(self, slug: str) -> Optional[Category]:
        with self._data_lock:
            for category in self.categories.values():
                if category.slug == slug:
                    return category
            return None

    def list_categories(self) -> List[Category]:
        with self._data_lock:
            return sorted(self.categories.values(), key=lambda c: c.name.lower())

    # boilerplates
    def create_boilerplate(
        self,
        author_id: str,
        title: str,
        *,
        description: Optional[str] = None,
        repository_url: Optional[str] = None,
        framework: Optional[str] = None,
        language: Optional[str] = None,
        tags: Optional[List[str]] = None,
        category_id: Optional[str] = None,
    ) -> Boilerplate:
        with self._data_lock:
            if author_id not in self.users:
                raise ConstraintViolation("author not found", {"field": "author_id"})
            if category_id and category_id not in self.categories:
                raise ConstraintViolation("category not found", {"field": "category_id"})
            now = datetime.utcnow()
            item = Boilerplate(
                id=str(uuid.uuid4()),
                title=title,
                author_id=author_id,
                description=description,
                repository_url=repository_url,
                framework=framework,
                language=language,
                tags=list(tags or []),
                category_id=category_id,
                created_at=now,
                updated_at=now,
            )
            self.boilerplates[item.id] = item
            return self._copy(item)

    def get_boilerplate(self, boilerplate_id: str) -> Optional[Boilerplate]:
        with self._data_lock:
            item = self.boilerplates.get(boilerplate_id)
            return self._copy(item) if item else None

    def update_boilerplate(
        self, boilerplate_id: str, changes: Dict[str, Any]
    ) -> Optional[Boilerplate]:
        unknown = set(changes) - _BOILERPLATE_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported fields: {sorted(unknown)}")
        with self._data_lock:
            item = self.boilerplates.get(boilerplate_id)
            if not item:
                return None
            category_id = changes.get("category_id")
            if category_id and category_id not in self.categories:
                raise ConstraintViolation("category not found", {"field": "category_id"})
            for field_name, value in changes.items():
                setattr(item, field_name, list(value) if field_name == "tags" else value)
            item.updated_at = datetime.utcnow()
            return self._copy(item)

    def set_boilerplate_repo_path(
        self, boilerplate_id: str, repo_path: Optional[str]
    ) -> Optional[Boilerplate]:
        with self._data_lock:
            item = self.boilerplates.get(boilerplate_id)
            if not item:
                return None
            item.repo_path = repo_path
            item.updated_at = datetime.utcnow()
            return self._copy(item)

    def delete_boilerplate(self, boilerplate_id: str) -> bool:
        with self._data_lock:
            if self.boilerplates.pop(boilerplate_id, None) is None:
                return False
            for key in [k for k in self.likes if k[1] == boilerplate_id]:
                self.likes.pop(key, None)
            return True

    def list_boilerplates(
        self,
        filters: Optional[BoilerplateFilter] = None,
        *,
        order_by: str = "created_at",
        descending: bool = True,
        limit: int = 10,
        after_id: Optional[str] = None,
    ) -> BoilerplatePage:
        if order_by not in BOILERPLATE_ORDER_FIELDS:
            raise ValueError(f"unsupported order field: {order_by}")
        with self._data_lock:
            rows = [b for b in self.boilerplates.values() if _matches(b, filters)]

            def sort_key(item: Boilerplate):
                return (getattr(item, order_by), item.id)

            rows.sort(key=sort_key, reverse=descending)
            total = len(rows)
            if after_id is not None:
                anchor = self.boilerplates.get(after_id)
                if anchor is None:
                    raise ValueError("invalid cursor")
                anchor_key = sort_key(anchor)
                if descending:
                    rows = [b for b in rows if sort_key(b) < anchor_key]
                else:
                    rows = [b for b in rows if sort_key(b) > anchor_key]
            return BoilerplatePage(
                items=[self._copy(b) for b in rows[: limit + 1]], total_count=total
            )

    def search_boilerplates(
        self,
        query: str,
        *,
        match_mode: str,
        min_score: float = 0.3,
        filters: Optional[BoilerplateFilter] = None,
        limit: int = 10,
        after_id: Optional[str] = None,
    ) -> BoilerplatePage:
        """Matches ordered by relevance descending, ties broken by id ascending."""
        with self._data_lock:
            scored: List[Tuple[float, Boilerplate]] = []
            for item in self.boilerplates.values():
                if not _matches(item, filters):
                    continue
                score = matches_query(item, query, match_mode, min_score)
                if score is not None:
                    scored.append((score, item))
            scored.sort(key=lambda pair: (-pair[0], pair[1].id))
            total = len(scored)
            if after_id is not None:
                anchor = self.boilerplates.get(after_id)
                if anchor is None:
                    raise ValueError("invalid cursor")
                anchor_key = (-relevance_score(anchor, query), anchor.id)
                scored = [p for p in scored if (-p[0], p[1].id) > anchor_key]
            page = scored[: limit + 1]
            return BoilerplatePage(
                items=[self._copy(item) for _, item in page],
                total_count=total,
                scores=[score for score, _ in page],
            )

    # likes
    def like_boilerplate(self, user_id: str, boilerplate_id: str) -> int:
        with self._data_lock:
            item = self.boilerplates.get(boilerplate_id)
            if item is None:
                raise ConstraintViolation("boilerplate not found", {"field": "boilerplate_id"})
            key = (user_id, boilerplate_id)
            if key not in self.likes:
                self.likes[key] = Like(user_id=user_id, boilerplate_id=boilerplate_id)
                item.like_count += 1
            return item.like_count

    def unlike_boilerplate(self, user_id: str, boilerplate_id: str) -> int:
        with self._data_lock:
            item = self.boilerplates.get(boilerplate_id)
            if item is None:
                raise ConstraintViolation("boilerplate not found", {"field": "boilerplate_id"})
            self._drop_like((user_id, boilerplate_id))
            return item.like_count

    def has_liked(self, user_id: str, boilerplate_id: str) -> bool:
        with self._data_lock:
            return (user_id, boilerplate_id) in self.likes

    def list_likers(self, boilerplate_id: str, limit: int = 100) -> List[User]:
        with self._data_lock:
            likes = sorted(
                (l for l in self.likes.values() if l.boilerplate_id == boilerplate_id),
                key=lambda l: l.created_at,
                reverse=True,
            )
            return [replace(self.users[l.user_id]) for l in likes[:limit] if l.user_id in self.users]

    def list_liked_boilerplates(self, user_id: str, limit: int = 100) -> List[Boilerplate]:
        with self._data_lock:
            likes = sorted(
                (l for l in self.likes.values() if l.user_id == user_id),
                key=lambda l: l.created_at,
                reverse=True,
            )
            return [
                self._copy(self.boilerplates[l.boilerplate_id])
                for l in likes[:limit]
                if l.boilerplate_id in self.boilerplates
            ]

    def _drop_like(self, key: Tuple[str, str]) -> None:
        if self.likes.pop(key, None) is None:
            return
        item = self.boilerplates.get(key[1])
        if item is not None:
            item.like_count = max(0, item.like_count - 1)

    @staticmethod
    def _copy(item: Boilerplate) -> Boilerplate:
        return replace(item, tags=list(item.tags))


def _naive(ts: datetime) -> datetime:
    return ts.replace(tzinfo=None) if ts.tzinfo else ts


def _matches(item: Boilerplate, filters: Optional[BoilerplateFilter]) -> bool:
    if filters is None:
        return True
    if filters.title and filters.title.lower() not in item.title.lower():
        return False
    if filters.description and filters.description.lower() not in (item.description or "").lower():
        return False
    if filters.author_id and item.author_id != filters.author_id:
        return False
    if filters.category_id and item.category_id != filters.category_id:
        return False
    if filters.tags:
        wanted: Set[str] = {t.lower() for t in filters.tags}
        if not wanted.issubset({t.lower() for t in item.tags}):
            return False
    return True
