"""Boilerplate catalogue service over the in-memory store.

Covers:
- keyset pagination for every order field and direction
- opaque cursors and their rejection
- conjunctive filters
- author/admin permissions on writes
- idempotent likes
- search match modes and relevance scores
"""

import base64
import uuid

import pytest

from boilerhub.service.auth import AuthContext
from boilerhub.service.boilerplates import BoilerplateService
from boilerhub.service.errors import ForbiddenError, NotFoundError, ValidationError
from boilerhub.service.repo_import import RepoImporter
from boilerhub.storage.cursors import decode_id_cursor, encode_id_cursor
from boilerhub.storage.models import BoilerplateFilter
from boilerhub.storage.memory import MemoryStore


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def service(memory_store, settings, tmp_path):
    return BoilerplateService(memory_store, settings, RepoImporter(tmp_path))


def _actor(store, email, role="user") -> AuthContext:
    user = store.create_user(email, email.split("@")[0], role=role)
    return AuthContext(user.id, user.email, user.role, str(uuid.uuid4()))


@pytest.fixture
def author(memory_store):
    return _actor(memory_store, "author@example.com")


@pytest.fixture
def stranger(memory_store):
    return _actor(memory_store, "stranger@example.com")


@pytest.fixture
def admin(memory_store):
    return _actor(memory_store, "admin@example.com", role="admin")


@pytest.fixture
def catalogue(service, author):
    titles = ["FastAPI Starter", "Django Kit", "Flask Minimal", "React Vite", "Svelte Kit"]
    return [service.create(author, {"title": t, "description": f"{t} template"}) for t in titles]


def _walk(service, page_size, **kwargs):
    seen, after, pages = [], None, 0
    while True:
        conn = service.list_boilerplates(first=page_size, after=after, **kwargs)
        pages += 1
        seen.extend(edge.node.id for edge in conn.edges)
        assert conn.total_count == 5
        if not conn.page_info.has_next_page:
            assert len(conn.edges) <= page_size
            return seen, pages
        after = conn.page_info.end_cursor


class TestPagination:
    @pytest.mark.parametrize("order_by", ["created_at", "updated_at", "title"])
    @pytest.mark.parametrize("direction", ["asc", "desc"])
    def test_pages_cover_every_row_once_in_order(
        self, service, catalogue, order_by, direction
    ):
        expected = sorted(
            catalogue,
            key=lambda b: (getattr(b, order_by), b.id),
            reverse=direction == "desc",
        )
        seen, pages = _walk(service, 2, order_by=order_by, direction=direction)
        assert seen == [b.id for b in expected]
        assert pages == 3

    def test_exact_page_boundary_has_no_next_page(self, service, catalogue):
        conn = service.list_boilerplates(first=5)
        assert len(conn.edges) == 5
        assert conn.page_info.has_next_page is False
        assert conn.page_info.end_cursor == conn.edges[-1].cursor

    def test_empty_catalogue(self, service):
        conn = service.list_boilerplates()
        assert conn.edges == []
        assert conn.page_info.end_cursor is None
        assert conn.total_count == 0

    def test_default_page_size(self, service, author, settings):
        for i in range(settings.default_page_size + 2):
            service.create(author, {"title": f"Template {i}"})
        conn = service.list_boilerplates()
        assert len(conn.edges) == settings.default_page_size
        assert conn.page_info.has_next_page

    @pytest.mark.parametrize("first", [0, -1, 101])
    def test_page_size_out_of_range(self, service, first):
        with pytest.raises(ValidationError):
            service.list_boilerplates(first=first)

    def test_unsupported_order_and_direction(self, service):
        with pytest.raises(ValidationError):
            service.list_boilerplates(order_by="like_count")
        with pytest.raises(ValidationError):
            service.list_boilerplates(direction="sideways")


class TestCursors:
    def test_cursor_is_base64_of_row_id(self, service, catalogue):
        edge = service.list_boilerplates(first=1).edges[0]
        assert decode_id_cursor(edge.cursor) == edge.node.id
        assert edge.cursor == encode_id_cursor(edge.node.id)

    @pytest.mark.parametrize("cursor", ["***", "", "bm90LWEtdXVpZA"])
    def test_malformed_cursor(self, service, catalogue, cursor):
        with pytest.raises(ValidationError):
            service.list_boilerplates(after=cursor)

    def test_cursor_for_unknown_row(self, service, catalogue):
        with pytest.raises(ValidationError):
            service.list_boilerplates(after=encode_id_cursor(str(uuid.uuid4())))

    def test_padded_cursor_is_accepted(self, service, catalogue):
        first = service.list_boilerplates(first=1).edges[0]
        padded = base64.urlsafe_b64encode(first.node.id.encode()).decode()
        conn = service.list_boilerplates(first=1, after=padded)
        assert conn.edges[0].node.id != first.node.id


class TestFilters:
    def test_title_and_description_are_case_insensitive_substrings(self, service, catalogue):
        conn = service.list_boilerplates(filters=BoilerplateFilter(title="kit"))
        assert {e.node.title for e in conn.edges} == {"Django Kit", "Svelte Kit"}
        conn = service.list_boilerplates(filters=BoilerplateFilter(description="VITE TEMPLATE"))
        assert [e.node.title for e in conn.edges] == ["React Vite"]

    def test_filters_are_conjunctive(self, service, author, stranger):
        service.create(author, {"title": "Go API", "tags": ["go", "api"]})
        service.create(stranger, {"title": "Go CLI", "tags": ["go"]})
        conn = service.list_boilerplates(
            filters=BoilerplateFilter(author_id=author.user_id, tags=["go"])
        )
        assert [e.node.title for e in conn.edges] == ["Go API"]
        assert conn.total_count == 1

    def test_tags_must_all_be_present(self, service, author):
        service.create(author, {"title": "One", "tags": ["python", "fastapi"]})
        service.create(author, {"title": "Two", "tags": ["python"]})
        conn = service.list_boilerplates(filters=BoilerplateFilter(tags=["python", "fastapi"]))
        assert [e.node.title for e in conn.edges] == ["One"]

    def test_category_filter(self, service, memory_store, author):
        backend = memory_store.get_category_by_slug("backend")
        service.create(author, {"title": "API", "category_id": backend.id})
        service.create(author, {"title": "UI"})
        conn = service.list_boilerplates(filters=BoilerplateFilter(category_id=backend.id))
        assert [e.node.title for e in conn.edges] == ["API"]

    def test_non_uuid_filter_ids_are_rejected(self, service):
        with pytest.raises(ValidationError):
            service.list_boilerplates(filters=BoilerplateFilter(author_id="42"))
        with pytest.raises(ValidationError):
            service.search("kit", filters=BoilerplateFilter(category_id="frontend"))


class TestWrites:
    def test_create_sets_author_and_defaults(self, service, author):
        item = service.create(author, {"title": "Starter", "tags": ["web"]})
        assert item.author_id == author.user_id
        assert item.like_count == 0
        assert item.repo_path is None
        assert item.tags == ["web"]

    def test_create_with_unknown_category(self, service, author):
        with pytest.raises(ValidationError):
            service.create(author, {"title": "X", "category_id": str(uuid.uuid4())})
        with pytest.raises(ValidationError):
            service.create(author, {"title": "X", "category_id": "frontend"})

    def test_author_can_update(self, service, author, catalogue):
        updated = service.update(author, catalogue[0].id, {"description": "new"})
        assert updated.description == "new"
        assert updated.title == catalogue[0].title
        assert updated.updated_at >= catalogue[0].updated_at

    def test_stranger_cannot_update_or_delete(self, service, stranger, catalogue):
        with pytest.raises(ForbiddenError):
            service.update(stranger, catalogue[0].id, {"title": "hijacked"})
        with pytest.raises(ForbiddenError):
            service.delete(stranger, catalogue[0].id)
        assert service.get(catalogue[0].id).title == catalogue[0].title

    def test_admin_can_update_and_delete(self, service, admin, catalogue):
        service.update(admin, catalogue[0].id, {"title": "Moderated"})
        service.delete(admin, catalogue[1].id)
        assert service.get(catalogue[0].id).title == "Moderated"
        with pytest.raises(NotFoundError):
            service.get(catalogue[1].id)

    @pytest.mark.parametrize("bad_id", ["not-a-uuid", str(uuid.uuid4())])
    def test_unknown_ids_are_not_found(self, service, author, bad_id):
        with pytest.raises(NotFoundError):
            service.get(bad_id)
        with pytest.raises(NotFoundError):
            service.update(author, bad_id, {"title": "x"})
        with pytest.raises(NotFoundError):
            service.delete(author, bad_id)

    def test_delete_removes_likes(self, service, memory_store, author, stranger, catalogue):
        service.like(stranger, catalogue[0].id)
        service.delete(author, catalogue[0].id)
        assert service.liked_by(stranger.user_id) == []
        assert not memory_store.has_liked(stranger.user_id, catalogue[0].id)


class TestLikes:
    def test_like_is_idempotent(self, service, stranger, catalogue):
        target = catalogue[0].id
        assert service.like(stranger, target) == 1
        assert service.like(stranger, target) == 1
        assert service.get(target).like_count == 1

    def test_unlike_is_idempotent(self, service, stranger, author, catalogue):
        target = catalogue[0].id
        service.like(stranger, target)
        service.like(author, target)
        assert service.unlike(stranger, target) == 1
        assert service.unlike(stranger, target) == 1
        assert service.unlike(author, target) == 0
        assert service.unlike(author, target) == 0

    def test_likers_and_liked_by(self, service, stranger, catalogue):
        service.like(stranger, catalogue[0].id)
        service.like(stranger, catalogue[2].id)
        assert [u.id for u in service.likers(catalogue[0].id)] == [stranger.user_id]
        assert {b.id for b in service.liked_by(stranger.user_id)} == {
            catalogue[0].id,
            catalogue[2].id,
        }

    def test_like_missing_boilerplate(self, service, stranger):
        with pytest.raises(NotFoundError):
            service.like(stranger, str(uuid.uuid4()))
        with pytest.raises(NotFoundError):
            service.unlike(stranger, "nope")


class TestSearch:
    def test_contains_matches_title_or_description(self, service, author):
        service.create(author, {"title": "Alpha", "description": "uses fastapi"})
        service.create(author, {"title": "FastAPI Beta"})
        service.create(author, {"title": "Gamma"})
        conn = service.search("fastapi")
        assert {e.node.title for e in conn.edges} == {"Alpha", "FastAPI Beta"}
        assert conn.total_count == 2

    def test_exact_and_starts_with_compare_titles(self, service, catalogue):
        exact = service.search("django kit", match_mode="exact")
        assert [e.node.title for e in exact.edges] == ["Django Kit"]
        prefix = service.search("Fla", match_mode="starts_with")
        assert [e.node.title for e in prefix.edges] == ["Flask Minimal"]
        assert service.search("Kit", match_mode="exact").edges == []

    def test_fuzzy_respects_min_score(self, service, catalogue):
        loose = service.search("fastapi startr", match_mode="fuzzy", min_score=0.2)
        assert loose.edges and loose.edges[0].node.title == "FastAPI Starter"
        strict = service.search("fastapi startr", match_mode="fuzzy", min_score=0.99)
        assert strict.edges == []

    def test_results_are_ordered_by_score(self, service, author):
        service.create(author, {"title": "react"})
        service.create(author, {"title": "react native starter with router"})
        conn = service.search("react")
        scores = [e.score for e in conn.edges]
        assert scores == sorted(scores, reverse=True)
        assert conn.edges[0].node.title == "react"
        assert all(0.0 <= s <= 1.0 for s in scores)

    def test_search_pages_with_cursors(self, service, author):
        for i in range(5):
            service.create(author, {"title": f"kit number {i}"})
        first = service.search("kit", first=3)
        second = service.search("kit", first=3, after=first.page_info.end_cursor)
        ids = [e.node.id for e in first.edges + second.edges]
        assert len(ids) == len(set(ids)) == 5
        assert first.page_info.has_next_page and not second.page_info.has_next_page

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"query": "   "},
            {"query": "kit", "match_mode": "regex"},
            {"query": "kit", "min_score": 1.5},
            {"query": "kit", "after": "%%%"},
        ],
    )
    def test_invalid_search_arguments(self, service, catalogue, kwargs):
        query = kwargs.pop("query")
        with pytest.raises(ValidationError):
            service.search(query, **kwargs)


class TestRepositoryAccess:
    async def test_archive_without_upload_is_not_found(self, service, catalogue):
        with pytest.raises(NotFoundError):
            await service.archive(catalogue[0].id)
        with pytest.raises(NotFoundError):
            await service.history(catalogue[0].id)

    async def test_stranger_cannot_upload(self, service, stranger, catalogue, tmp_path):
        with pytest.raises(ForbiddenError):
            await service.import_archive(stranger, catalogue[0].id, tmp_path / "x.zip")
