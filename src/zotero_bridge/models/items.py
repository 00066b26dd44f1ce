"""
Item models for Zotero resources.

Represents top-level library items together with their creators, tags and
child entities (attachments, notes, annotations).
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from zotero_bridge.utils.helpers import (
    generate_citation_key,
    get_creator_display_name,
    note_to_plain_text,
    relation_item_keys,
)

# Item types that are never returned as top-level library items
NON_LIBRARY_ITEM_TYPES: frozenset[str] = frozenset({"attachment", "note", "annotation"})

LINK_MODES = ("imported_file", "imported_url", "linked_file", "linked_url", "embedded_image")


class ZoteroModel(BaseModel):
    """Base for all Zotero entities: snake_case attributes, camelCase wire names."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict(self) -> dict[str, Any]:
        """Dump using the wire (camelCase) field names, omitting unset values."""
        return self.model_dump(by_alias=True, exclude_none=True)


class Creator(ZoteroModel):
    """A creator of a Zotero item."""

    creator_type: str = Field(
        default="author", description="Role of the creator (author, editor, etc.)"
    )
    first_name: str | None = Field(default=None, description="First name")
    last_name: str | None = Field(default=None, description="Last name")
    name: str | None = Field(default=None, description="Single-field name")

    @property
    def display_name(self) -> str:
        return get_creator_display_name(self.to_dict())


class Tag(ZoteroModel):
    """A tag on an item. Type 0 is manual, 1 automatic."""

    tag: str
    type: int = Field(default=0, description="0 = manual, 1 = automatic")

    @property
    def is_automatic(self) -> bool:
        return self.type == 1


class Attachment(ZoteroModel):
    """A file or link owned by a parent item."""

    key: str
    item_type: Literal["attachment"] = "attachment"
    title: str = ""
    link_mode: str = Field(default="imported_file", description="One of LINK_MODES")
    content_type: str | None = Field(default=None, description="MIME type")
    filename: str | None = None
    path: str | None = Field(default=None, description="Resolved local file path")
    url: str | None = None
    md5: str | None = None
    mtime: int | None = None
    parent_item: str | None = None
    date_added: str | None = None
    date_modified: str | None = None

    @property
    def is_pdf(self) -> bool:
        return self.content_type == "application/pdf"


class Note(ZoteroModel):
    """Free-form HTML note, usually owned by a parent item."""

    key: str
    item_type: Literal["note"] = "note"
    note: str = Field(default="", description="HTML content")
    parent_item: str | None = None
    date_added: str | None = None
    date_modified: str | None = None
    tags: list[Tag] = Field(default_factory=list)

    @property
    def plain_text(self) -> str:
        return note_to_plain_text(self.note)


class Annotation(ZoteroModel):
    """A PDF annotation. Its parent is always an attachment."""

    key: str
    item_type: Literal["annotation"] = "annotation"
    annotation_type: str = Field(
        ..., description="highlight, underline, note, image, ink or text"
    )
    annotation_text: str | None = None
    annotation_comment: str | None = None
    annotation_color: str | None = None
    annotation_page_label: str | None = None
    annotation_position: str | None = Field(
        default=None, description="JSON position descriptor"
    )
    parent_item: str | None = Field(default=None, description="Attachment key")
    date_added: str | None = None
    date_modified: str | None = None
    tags: list[Tag] = Field(default_factory=list)


class Item(ZoteroModel):
    """A top-level bibliographic record.

    Descriptive fields not declared here are kept as extra attributes under
    their canonical Zotero field name.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    # Core identifiers
    key: str = Field(..., description="Library-unique item key")
    version: int | None = Field(default=None, description="Monotonic item version")
    item_type: str = Field(..., description="Item type (journalArticle, book, etc.)")

    # Core fields
    title: str | None = None
    abstract_note: str | None = None
    date: str | None = None
    language: str | None = None
    url: str | None = None
    access_date: str | None = None

    # Publication fields
    publication_title: str | None = None
    journal_abbreviation: str | None = None
    volume: str | None = None
    issue: str | None = None
    pages: str | None = None
    edition: str | None = None
    series: str | None = None
    series_number: str | None = None
    series_title: str | None = None
    publisher: str | None = None
    place: str | None = None

    # Identifiers
    doi: str | None = Field(default=None, alias="DOI")
    isbn: str | None = Field(default=None, alias="ISBN")
    issn: str | None = Field(default=None, alias="ISSN")
    extra: str | None = None

    # Academic
    institution: str | None = None
    university: str | None = None
    thesis_type: str | None = None

    # Other
    short_title: str | None = None
    num_pages: str | None = None
    rights: str | None = None
    call_number: str | None = None
    archive: str | None = None
    archive_location: str | None = None
    library_catalog: str | None = None

    # Relationships
    creators: list[Creator] = Field(default_factory=list)
    tags: list[Tag] = Field(default_factory=list)
    collections: list[str] = Field(
        default_factory=list, description="Keys of collections holding this item"
    )
    relations: dict[str, str | list[str]] = Field(default_factory=dict)

    # Timestamps
    date_added: str | None = None
    date_modified: str | None = None

    # Children, populated only when requested
    attachments: list[Attachment] | None = None
    notes: list[Note] | None = None
    annotations: list[Annotation] | None = None

    @property
    def tag_names(self) -> list[str]:
        return [t.tag for t in self.tags]

    @property
    def citation_key(self) -> str:
        return generate_citation_key((c.to_dict() for c in self.creators), self.date)

    @property
    def related_keys(self) -> list[str]:
        return relation_item_keys(self.relations)

    @property
    def is_library_item(self) -> bool:
        return self.item_type not in NON_LIBRARY_ITEM_TYPES

    def field(self, name: str) -> Any:
        """Look up a field by its canonical Zotero name, declared or extra."""
        for attr, info in type(self).model_fields.items():
            if info.alias == name or attr == name:
                return getattr(self, attr)
        return (self.model_extra or {}).get(name)
