from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class Category:
    id: str
    name: str
    slug: str
    icon: Optional[str] = None
    color: Optional[str] = None
    description: Optional[str] = None


@dataclass
class Boilerplate:
    id: str
    title: str
    author_id: str
    description: Optional[str] = None
    repository_url: Optional[str] = None
    framework: Optional[str] = None
    language: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    category_id: Optional[str] = None
    like_count: int = 0
    repo_path: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Like:
    user_id: str
    boilerplate_id: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class BoilerplateFilter:
    """Conjunctive filter applied to boilerplate listings and searches."""

    title: Optional[str] = None
    description: Optional[str] = None
    author_id: Optional[str] = None
    category_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)


@dataclass
class BoilerplatePage:
    """One keyset page of boilerplates.

    ``items`` holds at most ``first + 1`` rows; the extra row only signals that
    another page exists. ``scores`` is aligned with ``items`` for searches.
    """

    items: List[Boilerplate]
    total_count: int
    scores: List[float] | None = None


# Sortable boilerplate columns exposed to clients
BOILERPLATE_ORDER_FIELDS = ("created_at", "updated_at", "title")

# Search match modes
MATCH_CONTAINS = "contains"
MATCH_EXACT = "exact"
MATCH_STARTS_WITH = "starts_with"
MATCH_FUZZY = "fuzzy"
MATCH_MODES = (MATCH_CONTAINS, MATCH_EXACT, MATCH_STARTS_WITH, MATCH_FUZZY)

DEFAULT_CATEGORIES = [
    {
        "name": "Frontend",
        "slug": "frontend",
        "icon": "Layout",
        "color": "text-pink-500",
        "description": "Client-side applications and UI starters",
    },
    {
        "name": "Backend",
        "slug": "backend",
        "icon": "Server",
        "color": "text-blue-500",
        "description": "APIs, services and server frameworks",
    },
    {
        "name": "Full Stack",
        "slug": "full-stack",
        "icon": "Layers",
        "color": "text-purple-500",
        "description": "End-to-end application templates",
    },
    {
        "name": "Mobile",
        "slug": "mobile",
        "icon": "Smartphone",
        "color": "text-green-500",
        "description": "iOS, Android and cross-platform apps",
    },
    {
        "name": "Desktop",
        "slug": "desktop",
        "icon": "Monitor",
        "color": "text-slate-500",
        "description": "Native and Electron desktop apps",
    },
    {
        "name": "DevOps",
        "slug": "devops",
        "icon": "GitBranch",
        "color": "text-orange-500",
        "description": "CI/CD pipelines and infrastructure as code",
    },
    {
        "name": "Docker",
        "slug": "docker",
        "icon": "Container",
        "color": "text-sky-500",
        "description": "Containerized setups and compose stacks",
    },
    {
        "name": "Database",
        "slug": "database",
        "icon": "Database",
        "color": "text-amber-500",
        "description": "Schemas, migrations and data layers",
    },
    {
        "name": "Authentication",
        "slug": "authentication",
        "icon": "KeyRound",
        "color": "text-red-500",
        "description": "Sign-in flows and identity providers",
    },
    {
        "name": "API",
        "slug": "api",
        "icon": "Plug",
        "color": "text-teal-500",
        "description": "REST and RPC service skeletons",
    },
    {
        "name": "GraphQL",
        "slug": "graphql",
        "icon": "Share2",
        "color": "text-fuchsia-500",
        "description": "GraphQL servers and clients",
    },
]
