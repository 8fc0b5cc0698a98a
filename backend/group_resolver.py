"""
Group / Category Resolver.

Upserts the groups, source groups and series categories discovered while
decoding a playlist. Each upsert is a single INSERT ... ON CONFLICT DO
NOTHING against the table's unique constraint followed by a lookup, so
concurrent workers resolving the same (playlist_id, name) always end up on
one row.
"""
import logging
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from models import Category, Group, SourceGroup

logger = logging.getLogger(__name__)

SOURCE_GROUP_CHUNK = 50


class GroupCategoryResolver:
    """Resolves group and category rows for one sync run of one playlist."""

    def __init__(
        self,
        session: Session,
        playlist_id: int,
        batch_no: str,
        user_id: Optional[int] = None,
        auto_sort: bool = False,
    ):
        self._session = session
        self.playlist_id = playlist_id
        self.batch_no = batch_no
        self.user_id = user_id
        self.auto_sort = auto_sort
        self._next_sort_order = 1
        self._groups: dict[str, Group] = {}
        self.created = 0
        self.updated = 0

    def resolve_group(self, name: str) -> Group:
        """
        Get or create the (non-custom) group for a source label.

        Existing groups keep their id and display name; they are stamped
        with this run's batch number and lose their "new" flag. With
        auto-sort, every group gets the next sort position in first-seen
        order.
        """
        name = name or ""
        cached = self._groups.get(name)
        if cached is not None:
            return cached

        sort_order = None
        if self.auto_sort:
            sort_order = self._next_sort_order
            self._next_sort_order += 1

        values = {
            "playlist_id": self.playlist_id,
            "user_id": self.user_id,
            "name": name,
            "name_internal": name,
            "custom": False,
            "new": True,
            "import_batch_no": self.batch_no,
        }
        if sort_order is not None:
            values["sort_order"] = sort_order

        stmt = (
            sqlite_insert(Group)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["playlist_id", "name_internal", "custom"])
        )
        created = (self._session.execute(stmt).rowcount or 0) > 0

        group = self._session.scalars(
            select(Group).where(
                Group.playlist_id == self.playlist_id,
                Group.name_internal == name,
                Group.custom.is_(False),
            )
        ).one()

        if created:
            self.created += 1
        else:
            group.import_batch_no = self.batch_no
            group.new = False
            if sort_order is not None:
                group.sort_order = sort_order
            self.updated += 1

        self._session.commit()
        self._groups[name] = group
        return group

    def upsert_source_groups(self, names: Iterable[str]) -> int:
        """Record every discovered group label. Returns the number of names processed."""
        unique = list(dict.fromkeys(names))
        for start in range(0, len(unique), SOURCE_GROUP_CHUNK):
            chunk = unique[start:start + SOURCE_GROUP_CHUNK]
            stmt = (
                sqlite_insert(SourceGroup)
                .values([{"playlist_id": self.playlist_id, "name": name} for name in chunk])
                .on_conflict_do_nothing(index_elements=["playlist_id", "name"])
            )
            self._session.execute(stmt)
        self._session.commit()
        logger.debug(f"[GROUPS] Recorded {len(unique)} source groups for playlist {self.playlist_id}")
        return len(unique)

    def upsert_categories(self, categories: Iterable[dict]) -> dict[str, Category]:
        """
        Get or create series categories keyed by the provider category id.

        Returns:
            Mapping of source_category_id -> Category.
        """
        resolved: dict[str, Category] = {}
        for item in categories:
            source_id = item.get("category_id")
            if source_id is None:
                continue
            source_id = str(source_id)
            name = item.get("category_name") or ""
            stmt = (
                sqlite_insert(Category)
                .values(
                    playlist_id=self.playlist_id,
                    user_id=self.user_id,
                    name=name,
                    name_internal=name,
                    source_category_id=source_id,
                    new=True,
                    import_batch_no=self.batch_no,
                )
                .on_conflict_do_nothing(index_elements=["playlist_id", "source_category_id"])
            )
            created = (self._session.execute(stmt).rowcount or 0) > 0
            category = self._session.scalars(
                select(Category).where(
                    Category.playlist_id == self.playlist_id,
                    Category.source_category_id == source_id,
                )
            ).one()
            if not created:
                category.name_internal = name
                category.import_batch_no = self.batch_no
                category.new = False
            resolved[source_id] = category
        self._session.commit()
        return resolved


def discover_groups(names: Iterable[str]) -> list[str]:
    """Distinct group names in first-seen order (preprocess discovery)."""
    return list(dict.fromkeys(name for name in names))
