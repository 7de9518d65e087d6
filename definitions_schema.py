"""
Game definitions schema.

Each supported game ships a TOML file listing its categories and the known
entities (characters, weapons, ...) within them.  The asset index syncs
these definitions on startup; every category additionally gets an
``<category>-other`` entity for assets that match nothing.

Example:

    [characters]
    name = "Characters"

    [[characters.entities]]
    name = "Raiden Shogun"
    slug = "raiden-shogun"
    description = "Electro archon"
    details = '{"element": "Electro"}'
    base_image = "raiden.png"

``details`` may be given either as a JSON string (legacy files) or as an
inline table.
"""

from __future__ import annotations

import json
import logging
import re
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field, RootModel, field_validator, model_validator

OTHER_ENTITY_SUFFIX = "-other"
OTHER_ENTITY_NAME = "Other/Unknown"
OTHER_ENTITY_DESCRIPTION = "Uncategorized assets."

_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9\-_]*$")

_log = logging.getLogger(__name__)


class EntityDefinition(BaseModel):
    """One known entity inside a category."""

    name: str
    slug: str
    description: str | None = None
    details: dict = Field(default_factory=dict)
    base_image: str | None = None

    @field_validator("slug")
    @classmethod
    def _check_slug(cls, v: str) -> str:
        v = v.strip()
        if not _SLUG_RE.match(v):
            raise ValueError(f"Invalid entity slug {v!r}")
        if v.endswith(OTHER_ENTITY_SUFFIX):
            raise ValueError(
                f"Entity slug {v!r} uses the reserved suffix {OTHER_ENTITY_SUFFIX!r}"
            )
        return v

    @field_validator("details", mode="before")
    @classmethod
    def _parse_details(cls, v):
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError as exc:
                raise ValueError(f"details is not valid JSON: {exc}")
            if not isinstance(parsed, dict):
                raise ValueError("details JSON must be an object")
            return parsed
        return v


class CategoryDefinition(BaseModel):
    name: str
    entities: list[EntityDefinition] = Field(default_factory=list)


class GameDefinitions(RootModel[dict[str, CategoryDefinition]]):
    """Mapping of category slug -> category definition."""

    @field_validator("root")
    @classmethod
    def _check_category_slugs(cls, v: dict[str, CategoryDefinition]):
        for slug in v:
            if not _SLUG_RE.match(slug):
                raise ValueError(f"Invalid category slug {slug!r}")
        return v

    @model_validator(mode="after")
    def _no_duplicate_entities(self) -> GameDefinitions:
        seen: dict[str, str] = {}
        for cat_slug, cat in self.root.items():
            for entity in cat.entities:
                if entity.slug in seen:
                    raise ValueError(
                        f"Duplicate entity slug {entity.slug!r} "
                        f"(in {seen[entity.slug]!r} and {cat_slug!r})"
                    )
                seen[entity.slug] = cat_slug
        return self

    def categories(self) -> dict[str, CategoryDefinition]:
        return self.root


def other_entity_slug(category_slug: str) -> str:
    return f"{category_slug}{OTHER_ENTITY_SUFFIX}"


def parse_definitions(data: bytes) -> GameDefinitions:
    """Parse raw TOML bytes into GameDefinitions.

    Raises ``pydantic.ValidationError`` if the data is invalid.
    Raises ``tomllib.TOMLDecodeError`` if the bytes are not valid TOML.
    """
    return GameDefinitions.model_validate(tomllib.loads(data.decode("utf-8")))


def load_definitions(path: str | Path) -> GameDefinitions:
    path = Path(path)
    defs = parse_definitions(path.read_bytes())
    _log.info("Loaded %d categories from %s", len(defs.root), path)
    return defs
