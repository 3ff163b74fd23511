from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from boilerhub.config import Settings
from boilerhub.logging import get_logger
from boilerhub.service.auth import AuthContext, AuthService
from boilerhub.service.errors import ForbiddenError, NotFoundError, ValidationError
from boilerhub.service.repo_import import Commit, RepoImporter, RepoImportResult
from boilerhub.storage.cursors import decode_id_cursor, encode_id_cursor, is_uuid
from boilerhub.storage.errors import ConstraintViolation
from boilerhub.storage.models import (
    BOILERPLATE_ORDER_FIELDS,
    MATCH_MODES,
    Boilerplate,
    BoilerplateFilter,
    BoilerplatePage,
    Category,
    User,
)

logger = get_logger(__name__)


@dataclass
class Edge:
    node: Boilerplate
    cursor: str
    score: Optional[float] = None


@dataclass
class PageInfo:
    has_next_page: bool
    end_cursor: Optional[str]


@dataclass
class Connection:
    edges: List[Edge] = field(default_factory=list)
    page_info: PageInfo = field(default_factory=lambda: PageInfo(False, None))
    total_count: int = 0


class BoilerplateService:
    """Boilerplate catalogue: CRUD, listing, search, likes and repositories."""

    def __init__(self, store, settings: Settings, repos: RepoImporter) -> None:
        self.store = store
        self.settings = settings
        self.repos = repos

    # reads
    def list_categories(self) -> List[Category]:
        return self.store.list_categories()

    def get(self, boilerplate_id: str) -> Boilerplate:
        item = self.store.get_boilerplate(boilerplate_id) if is_uuid(boilerplate_id) else None
        if item is None:
            raise NotFoundError("boilerplate not found", detail={"id": boilerplate_id})
        return item

    def _page_size(self, first: Optional[int]) -> int:
        if first is None:
            return self.settings.default_page_size
        if first < 1 or first > self.settings.max_page_size:
            raise ValidationError(
                "first out of range",
                detail={"min": 1, "max": self.settings.max_page_size},
            )
        return first

    @staticmethod
    def _anchor(after: Optional[str]) -> Optional[str]:
        if after is None:
            return None
        try:
            anchor = decode_id_cursor(after)
        except ValueError as exc:
            raise ValidationError("invalid cursor", detail={"field": "after"}) from exc
        if not is_uuid(anchor):
            raise ValidationError("invalid cursor", detail={"field": "after"})
        return anchor

    @staticmethod
    def _check_filters(filters: Optional[BoilerplateFilter]) -> None:
        if filters is None:
            return
        for name in ("author_id", "category_id"):
            value = getattr(filters, name)
            if value and not is_uuid(value):
                raise ValidationError(f"invalid {name}", detail={"field": name})

    @staticmethod
    def _connection(page: BoilerplatePage, limit: int) -> Connection:
        items = page.items[:limit]
        scores = page.scores[:limit] if page.scores is not None else None
        edges = [
            Edge(
                node=item,
                cursor=encode_id_cursor(item.id),
                score=scores[i] if scores is not None else None,
            )
            for i, item in enumerate(items)
        ]
        return Connection(
            edges=edges,
            page_info=PageInfo(
                has_next_page=len(page.items) > limit,
                end_cursor=edges[-1].cursor if edges else None,
            ),
            total_count=page.total_count,
        )

    def list_boilerplates(
        self,
        *,
        first: Optional[int] = None,
        after: Optional[str] = None,
        filters: Optional[BoilerplateFilter] = None,
        order_by: str = "created_at",
        direction: str = "desc",
    ) -> Connection:
        if order_by not in BOILERPLATE_ORDER_FIELDS:
            raise ValidationError("unsupported order_by", detail={"allowed": list(BOILERPLATE_ORDER_FIELDS)})
        if direction not in ("asc", "desc"):
            raise ValidationError("unsupported direction", detail={"allowed": ["asc", "desc"]})
        self._check_filters(filters)
        limit = self._page_size(first)
        try:
            page = self.store.list_boilerplates(
                filters,
                order_by=order_by,
                descending=direction == "desc",
                limit=limit,
                after_id=self._anchor(after),
            )
        except ValueError as exc:
            raise ValidationError("invalid cursor", detail={"field": "after"}) from exc
        return self._connection(page, limit)

    def search(
        self,
        query: str,
        *,
        match_mode: str = "contains",
        min_score: float = 0.3,
        first: Optional[int] = None,
        after: Optional[str] = None,
        filters: Optional[BoilerplateFilter] = None,
    ) -> Connection:
        query = (query or "").strip()
        if not query:
            raise ValidationError("query is required", detail={"field": "query"})
        if match_mode not in MATCH_MODES:
            raise ValidationError("unsupported match_mode", detail={"allowed": list(MATCH_MODES)})
        if not 0.0 <= min_score <= 1.0:
            raise ValidationError("min_score must be between 0 and 1")
        self._check_filters(filters)
        limit = self._page_size(first)
        try:
            page = self.store.search_boilerplates(
                query,
                match_mode=match_mode,
                min_score=min_score,
                filters=filters,
                limit=limit,
                after_id=self._anchor(after),
            )
        except ValueError as exc:
            raise ValidationError("invalid cursor", detail={"field": "after"}) from exc
        return self._connection(page, limit)

    # writes
    @staticmethod
    def _check_category(fields: Dict[str, Any]) -> None:
        category_id = fields.get("category_id")
        if category_id and not is_uuid(category_id):
            raise ValidationError("category not found", detail={"field": "category_id"})

    def _require_editor(self, item: Boilerplate, actor: AuthContext) -> None:
        if item.author_id != actor.user_id and not AuthService.role_allows(actor.role, "admin"):
            raise ForbiddenError("only the author or an admin may modify this boilerplate")

    def create(self, actor: AuthContext, fields: Dict[str, Any]) -> Boilerplate:
        self._check_category(fields)
        try:
            item = self.store.create_boilerplate(actor.user_id, **fields)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        logger.info("boilerplate_created", boilerplate_id=item.id, author_id=actor.user_id)
        return item

    def update(self, actor: AuthContext, boilerplate_id: str, changes: Dict[str, Any]) -> Boilerplate:
        item = self.get(boilerplate_id)
        self._require_editor(item, actor)
        self._check_category(changes)
        try:
            updated = self.store.update_boilerplate(boilerplate_id, changes)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError("boilerplate not found", detail={"id": boilerplate_id})
        logger.info("boilerplate_updated", boilerplate_id=boilerplate_id, fields=sorted(changes))
        return updated

    def delete(self, actor: AuthContext, boilerplate_id: str) -> None:
        item = self.get(boilerplate_id)
        self._require_editor(item, actor)
        self.store.delete_boilerplate(boilerplate_id)
        self.repos.remove(boilerplate_id)
        logger.info("boilerplate_deleted", boilerplate_id=boilerplate_id, actor_id=actor.user_id)

    # likes
    def like(self, actor: AuthContext, boilerplate_id: str) -> int:
        self.get(boilerplate_id)
        try:
            return self.store.like_boilerplate(actor.user_id, boilerplate_id)
        except ConstraintViolation as exc:
            raise NotFoundError("boilerplate not found", detail={"id": boilerplate_id}) from exc

    def unlike(self, actor: AuthContext, boilerplate_id: str) -> int:
        self.get(boilerplate_id)
        try:
            return self.store.unlike_boilerplate(actor.user_id, boilerplate_id)
        except ConstraintViolation as exc:
            raise NotFoundError("boilerplate not found", detail={"id": boilerplate_id}) from exc

    def likers(self, boilerplate_id: str) -> List[User]:
        self.get(boilerplate_id)
        return self.store.list_likers(boilerplate_id)

    def liked_by(self, user_id: str) -> List[Boilerplate]:
        return self.store.list_liked_boilerplates(user_id)

    # repositories
    async def import_archive(
        self, actor: AuthContext, boilerplate_id: str, archive_path: Path
    ) -> RepoImportResult:
        item = self.get(boilerplate_id)
        self._require_editor(item, actor)
        author = self.store.get_user(actor.user_id)
        result = await self.repos.import_zip(
            boilerplate_id,
            archive_path,
            author_name=(author.name if author and author.name else None),
            author_email=actor.email,
        )
        self.store.set_boilerplate_repo_path(boilerplate_id, result.path)
        return result

    async def archive(self, boilerplate_id: str, ref: str = "HEAD") -> bytes:
        self._require_repo(boilerplate_id)
        return await self.repos.archive(boilerplate_id, ref)

    async def history(self, boilerplate_id: str, limit: int = 20) -> List[Commit]:
        self._require_repo(boilerplate_id)
        return await self.repos.history(boilerplate_id, limit)

    async def list_files(self, boilerplate_id: str, ref: str = "HEAD") -> List[str]:
        self._require_repo(boilerplate_id)
        return await self.repos.list_files(boilerplate_id, ref)

    async def read_file(self, boilerplate_id: str, path: str, ref: str = "HEAD") -> bytes:
        self._require_repo(boilerplate_id)
        return await self.repos.read_file(boilerplate_id, path, ref)

    def _require_repo(self, boilerplate_id: str) -> None:
        if not self.get(boilerplate_id).repo_path:
            raise NotFoundError("no files uploaded for this boilerplate")
