"""
Collection models for Zotero library organization.
"""

from pydantic import Field, field_validator

from zotero_bridge.models.items import ZoteroModel


class Collection(ZoteroModel):
    """A named folder. Collections form a tree through their parent key."""

    key: str = Field(..., description="Unique collection key")
    name: str = Field(..., description="Collection name")
    version: int | None = None
    parent_collection: str | None = Field(
        default=None, description="Parent collection key (None for top level)"
    )
    num_items: int | None = Field(default=None, description="Items directly in the collection")
    num_collections: int | None = Field(default=None, description="Direct sub-collections")

    @field_validator("parent_collection", mode="before")
    @classmethod
    def _false_means_top_level(cls, value: object) -> object:
        # The web API reports top-level collections with parentCollection: false
        if value is False or value == "":
            return None
        return value
