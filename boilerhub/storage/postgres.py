from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from boilerhub.logging import get_logger
from boilerhub.storage.errors import ConstraintViolation
from boilerhub.storage.models import (
    BOILERPLATE_ORDER_FIELDS,
    DEFAULT_CATEGORIES,
    MATCH_CONTAINS,
    MATCH_EXACT,
    MATCH_FUZZY,
    MATCH_STARTS_WITH,
    Boilerplate,
    BoilerplateFilter,
    BoilerplatePage,
    Category,
    User,
)

_BOILERPLATE_MUTABLE_FIELDS = (
    "title",
    "description",
    "repository_url",
    "framework",
    "language",
    "tags",
    "category_id",
)

_SCORE_SQL = (
    "GREATEST(similarity(b.title, %(query)s), "
    "similarity(COALESCE(b.description, ''), %(query)s))"
)


def _like_pattern(value: str, *, prefix: bool = False) -> str:
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}%" if prefix else f"%{escaped}%"


class PostgresStore:
    """Postgres-backed store for users, categories, boilerplates and likes."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()
        self._ensure_default_categories()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Fail fast when the tables or the pg_trgm extension are missing."""

        required_tables = [
            "app_user",
            "user_auth_credential",
            "category",
            "boilerplate",
            "boilerplate_like",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply sql/000_base.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )
            trgm_ext = conn.execute(
                "SELECT extname FROM pg_extension WHERE extname = 'pg_trgm'"
            ).fetchone()
            if not trgm_ext:
                raise RuntimeError(
                    "pg_trgm extension is missing. Apply sql/000_base.sql to enable search."
                )

    def _ensure_default_categories(self) -> None:
        with self._connect() as conn:
            for seed in DEFAULT_CATEGORIES:
                conn.execute(
                    """
                    INSERT INTO category (id, name, slug, icon, color, description)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (slug) DO NOTHING
                    """,
                    (
                        str(uuid.uuid4()),
                        seed["name"],
                        seed["slug"],
                        seed.get("icon"),
                        seed.get("color"),
                        seed.get("description"),
                    ),
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at", datetime.utcnow()),
            updated_at=row.get("updated_at", datetime.utcnow()),
            meta=meta or {},
        )

    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "user",
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        email,
                        name,
                        role,
                        is_active,
                        json.dumps(meta or {}),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(
        self, limit: int = 100, *, after: Optional[Tuple[datetime, str]] = None
    ) -> List[User]:
        with self._connect() as conn:
            if after is not None:
                rows = conn.execute(
                    """
                    SELECT * FROM app_user
                    WHERE (created_at, id) < (%s, %s)
                    ORDER BY created_at DESC, id DESC
                    LIMIT %s
                    """,
                    (after[0], after[1], limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM app_user ORDER BY created_at DESC, id DESC LIMIT %s",
                    (limit,),
                ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET name = COALESCE(%s, name),
                    meta = COALESCE(meta, '{}'::jsonb) || COALESCE(%s::jsonb, '{}'::jsonb),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (name, json.dumps(meta) if meta is not None else None, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # categories
    @staticmethod
    def _row_to_category(row: Dict[str, Any]) -> Category:
        return Category(
            id=str(row["id"]),
            name=row["name"],
            slug=row["slug"],
            icon=row.get("icon"),
            color=row.get("color"),
            description=row.get("description"),
        )

    def create_category(
        self,
        name: str,
        slug: str,
        *,
        icon: Optional[str] = None,
        color: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Category:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO category (id, name, slug, icon, color, description)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), name, slug, icon, color, description),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("category slug already exists", {"field": "slug"})
        return self._row_to_category(row)

    def get_category(self, category_id: str) -> Optional[Category]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM category WHERE id = %s", (category_id,)
            ).fetchone()
        return self._row_to_category(row) if row else None

    def get_category_by_slug(self, slug: str) -> Optional[Category]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM category WHERE slug = %s", (slug,)
            ).fetchone()
        return self._row_to_category(row) if row else None

    def list_categories(self) -> List[Category]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM category ORDER BY lower(name)").fetchall()
        return [self._row_to_category(row) for row in rows]

    # boilerplates
    @staticmethod
    def _row_to_boilerplate(row: Dict[str, Any]) -> Boilerplate:
        return Boilerplate(
            id=str(row["id"]),
            title=row["title"],
            author_id=str(row["author_id"]),
            description=row.get("description"),
            repository_url=row.get("repository_url"),
            framework=row.get("framework"),
            language=row.get("language"),
            tags=list(row.get("tags") or []),
            category_id=str(row["category_id"]) if row.get("category_id") else None,
            like_count=int(row.get("like_count") or 0),
            repo_path=row.get("repo_path"),
            created_at=row.get("created_at", datetime.utcnow()),
            updated_at=row.get("updated_at", datetime.utcnow()),
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO boilerplate (
                        id, title, description, repository_url, framework, language,
                        tags, category_id, author_id
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        title,
                        description,
                        repository_url,
                        framework,
                        language,
                        list(tags or []),
                        category_id,
                        author_id,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            field = "category_id" if "category" in str(exc) else "author_id"
            raise ConstraintViolation(f"{field.split('_')[0]} not found", {"field": field})
        return self._row_to_boilerplate(row)

    def get_boilerplate(self, boilerplate_id: str) -> Optional[Boilerplate]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM boilerplate WHERE id = %s", (boilerplate_id,)
            ).fetchone()
        return self._row_to_boilerplate(row) if row else None

    def update_boilerplate(
        self, boilerplate_id: str, changes: Dict[str, Any]
    ) -> Optional[Boilerplate]:
        unknown = set(changes) - set(_BOILERPLATE_MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"unsupported fields: {sorted(unknown)}")
        if not changes:
            return self.get_boilerplate(boilerplate_id)
        # Column names come from the whitelist above, never from callers
        assignments = ", ".join(f"{name} = %s" for name in changes)
        params = [list(v) if k == "tags" else v for k, v in changes.items()]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE boilerplate SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    (*params, boilerplate_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("category not found", {"field": "category_id"})
        return self._row_to_boilerplate(row) if row else None

    def set_boilerplate_repo_path(
        self, boilerplate_id: str, repo_path: Optional[str]
    ) -> Optional[Boilerplate]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE boilerplate SET repo_path = %s, updated_at = now() WHERE id = %s RETURNING *",
                (repo_path, boilerplate_id),
            ).fetchone()
        return self._row_to_boilerplate(row) if row else None

    def delete_boilerplate(self, boilerplate_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM boilerplate WHERE id = %s", (boilerplate_id,))
            return result.rowcount > 0

    @staticmethod
    def _filter_clauses(filters: Optional[BoilerplateFilter]) -> Tuple[List[str], Dict[str, Any]]:
        clauses: List[str] = []
        params: Dict[str, Any] = {}
        if filters is None:
            return clauses, params
        if filters.title:
            clauses.append("b.title ILIKE %(f_title)s")
            params["f_title"] = _like_pattern(filters.title)
        if filters.description:
            clauses.append("b.description ILIKE %(f_description)s")
            params["f_description"] = _like_pattern(filters.description)
        if filters.author_id:
            clauses.append("b.author_id = %(f_author)s")
            params["f_author"] = filters.author_id
        if filters.category_id:
            clauses.append("b.category_id = %(f_category)s")
            params["f_category"] = filters.category_id
        if filters.tags:
            clauses.append("b.tags @> %(f_tags)s::text[]")
            params["f_tags"] = [t.lower() for t in filters.tags]
        return clauses, params

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
        clauses, params = self._filter_clauses(filters)
        where = " AND ".join(clauses) or "TRUE"
        direction = "DESC" if descending else "ASC"
        comparator = "<" if descending else ">"
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT count(*) AS n FROM boilerplate b WHERE {where}", params
            ).fetchone()["n"]
            page_where = where
            if after_id is not None:
                anchor = conn.execute(
                    "SELECT 1 FROM boilerplate WHERE id = %s", (after_id,)
                ).fetchone()
                if not anchor:
                    raise ValueError("invalid cursor")
                page_where += (
                    f" AND (b.{order_by}, b.id) {comparator} "
                    f"(SELECT a.{order_by}, a.id FROM boilerplate a WHERE a.id = %(after_id)s)"
                )
                params["after_id"] = after_id
            params["limit"] = limit + 1
            rows = conn.execute(
                f"""
                SELECT b.* FROM boilerplate b
                WHERE {page_where}
                ORDER BY b.{order_by} {direction}, b.id {direction}
                LIMIT %(limit)s
                """,
                params,
            ).fetchall()
        return BoilerplatePage(
            items=[self._row_to_boilerplate(row) for row in rows], total_count=int(total)
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
        clauses, params = self._filter_clauses(filters)
        params["query"] = query
        if match_mode == MATCH_CONTAINS:
            clauses.append("(b.title ILIKE %(pattern)s OR b.description ILIKE %(pattern)s)")
            params["pattern"] = _like_pattern(query)
        elif match_mode == MATCH_EXACT:
            clauses.append("lower(b.title) = lower(%(query)s)")
        elif match_mode == MATCH_STARTS_WITH:
            clauses.append("b.title ILIKE %(pattern)s")
            params["pattern"] = _like_pattern(query, prefix=True)
        elif match_mode == MATCH_FUZZY:
            clauses.append(f"{_SCORE_SQL} >= %(min_score)s")
            params["min_score"] = min_score
        else:
            raise ValueError(f"unsupported match mode: {match_mode}")
        where = " AND ".join(clauses)
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT count(*) AS n FROM boilerplate b WHERE {where}", params
            ).fetchone()["n"]
            keyset = ""
            if after_id is not None:
                anchor = conn.execute(
                    f"SELECT {_SCORE_SQL} AS score FROM boilerplate b WHERE b.id = %(after_id)s",
                    {"query": query, "after_id": after_id},
                ).fetchone()
                if not anchor:
                    raise ValueError("invalid cursor")
                keyset = (
                    " AND (m.score < %(anchor_score)s"
                    " OR (m.score = %(anchor_score)s AND m.id > %(after_id)s))"
                )
                params["anchor_score"] = anchor["score"]
                params["after_id"] = after_id
            params["limit"] = limit + 1
            rows = conn.execute(
                f"""
                WITH m AS (
                    SELECT b.*, {_SCORE_SQL} AS score FROM boilerplate b WHERE {where}
                )
                SELECT * FROM m
                WHERE TRUE{keyset}
                ORDER BY m.score DESC, m.id ASC
                LIMIT %(limit)s
                """,
                params,
            ).fetchall()
        return BoilerplatePage(
            items=[self._row_to_boilerplate(row) for row in rows],
            total_count=int(total),
            scores=[float(row["score"]) for row in rows],
        )

    # likes
    def like_boilerplate(self, user_id: str, boilerplate_id: str) -> int:
        try:
            with self._connect() as conn:
                inserted = conn.execute(
                    """
                    INSERT INTO boilerplate_like (user_id, boilerplate_id)
                    VALUES (%s, %s)
                    ON CONFLICT (user_id, boilerplate_id) DO NOTHING
                    """,
                    (user_id, boilerplate_id),
                ).rowcount
                row = conn.execute(
                    """
                    UPDATE boilerplate SET like_count = like_count + %s
                    WHERE id = %s
                    RETURNING like_count
                    """,
                    (1 if inserted else 0, boilerplate_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("boilerplate not found", {"field": "boilerplate_id"})
        return int(row["like_count"]) if row else 0

    def unlike_boilerplate(self, user_id: str, boilerplate_id: str) -> int:
        with self._connect() as conn:
            removed = conn.execute(
                "DELETE FROM boilerplate_like WHERE user_id = %s AND boilerplate_id = %s",
                (user_id, boilerplate_id),
            ).rowcount
            row = conn.execute(
                """
                UPDATE boilerplate SET like_count = GREATEST(like_count - %s, 0)
                WHERE id = %s
                RETURNING like_count
                """,
                (1 if removed else 0, boilerplate_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("boilerplate not found", {"field": "boilerplate_id"})
        return int(row["like_count"])

    def has_liked(self, user_id: str, boilerplate_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM boilerplate_like WHERE user_id = %s AND boilerplate_id = %s",
                (user_id, boilerplate_id),
            ).fetchone()
        return row is not None

    def list_likers(self, boilerplate_id: str, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT u.* FROM boilerplate_like l
                JOIN app_user u ON u.id = l.user_id
                WHERE l.boilerplate_id = %s
                ORDER BY l.created_at DESC
                LIMIT %s
                """,
                (boilerplate_id, limit),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def list_liked_boilerplates(self, user_id: str, limit: int = 100) -> List[Boilerplate]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT b.* FROM boilerplate_like l
                JOIN boilerplate b ON b.id = l.boilerplate_id
                WHERE l.user_id = %s
                ORDER BY l.created_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [self._row_to_boilerplate(row) for row in rows]
