"""
Persistence for integration links and synced list items.

``IntegrationPersistence`` wraps one session and owns every write the sync
pipelines make: integration records, user links and their history, and the
deduplicating upsert of list items. Reads used by status and aggregation live
here too so adapters never build queries themselves.
"""
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from app.core.logging_config import log_debug, log_info, log_warning
from app.core.time_utils import ensure_utc, utc_now
from app.integrations import db
from app.integrations.db import AnySession
from app.models.enums import IntegrationStatus, RecordStatus
from app.models.integration import Integration, UserIntegration, UserIntegrationHistory
from app.models.lists import ItemCategory, ItemList, ListItem, UserList
from app.models.user import User

ACTIVE = RecordStatus.ACTIVE.value


class ListTarget(NamedTuple):
    """Where a bucket of synced items is written."""
    list: ItemList
    user_list: UserList
    category: Optional[ItemCategory]


def normalize_attributes(attributes: Dict[str, Any]) -> Dict[str, Any]:
    """Round-trip through JSON so stored and compared values have the same shape."""
    return json.loads(json.dumps(attributes or {}, default=str))


def _canonical(value: Any) -> str:
    return json.dumps(value or {}, sort_keys=True, default=str)


def _external_identity(attributes: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    external = attributes.get("external") if isinstance(attributes, dict) else None
    if not isinstance(external, dict):
        return None, None
    provider = external.get("provider")
    external_id = external.get("id")
    if not provider or external_id in (None, ""):
        return None, None
    return str(provider), str(external_id)


class IntegrationPersistence:
    """Integration links, history and deduplicating list-item writes."""

    def __init__(self, session: AnySession):
        self.session = session

    async def rollback(self) -> None:
        """Discard pending changes after a failed write so the session stays usable."""
        await db.rollback(self.session)

    # ================================================================================
    # INTEGRATIONS AND LINKS
    # ================================================================================

    async def get_integration(self, name: str) -> Optional[Integration]:
        result = await db.execute(
            self.session,
            select(Integration).where(
                Integration.name == name,
                Integration.rec_seq == 0,
                Integration.rec_status == ACTIVE,
            ),
        )
        return result.first()

    async def ensure_integration(self, name: str) -> Integration:
        """Find or create the integration record for a provider key."""
        existing = await self.get_integration(name)
        if existing:
            return existing

        integration = Integration(name=name, popularity=0)
        self.session.add(integration)
        try:
            await db.commit(self.session)
        except IntegrityError:
            await db.rollback(self.session)
            existing = await self.get_integration(name)
            if existing is None:
                raise
            return existing
        await db.refresh(self.session, integration)
        log_info("Integration record created", provider=name)
        return integration

    async def get_link(self, user_id: uuid.UUID, integration_id: uuid.UUID) -> Optional[UserIntegration]:
        result = await db.execute(
            self.session,
            select(UserIntegration).where(
                UserIntegration.user_id == user_id,
                UserIntegration.integration_id == integration_id,
                UserIntegration.rec_seq == 0,
                UserIntegration.rec_status == ACTIVE,
            ),
        )
        return result.first()

    async def get_history(self, link_id: uuid.UUID) -> Optional[UserIntegrationHistory]:
        result = await db.execute(
            self.session,
            select(UserIntegrationHistory).where(
                UserIntegrationHistory.user_integration_id == link_id,
                UserIntegrationHistory.rec_status == ACTIVE,
            ),
        )
        return result.first()

    async def ensure_user_integration(self, user_id: uuid.UUID, integration_id: uuid.UUID) -> UserIntegration:
        """
        Find or create the user's link.

        A new link is created PENDING together with its history row in one
        transaction.
        """
        link = await self.get_link(user_id, integration_id)
        if link:
            return link

        link = UserIntegration(
            user_id=user_id,
            integration_id=integration_id,
            status=IntegrationStatus.PENDING,
        )
        self.session.add(link)
        try:
            await db.flush(self.session)
            self.session.add(
                UserIntegrationHistory(
                    user_integration_id=link.id,
                    first_connected_at=utc_now(),
                )
            )
            await db.commit(self.session)
        except IntegrityError:
            await db.rollback(self.session)
            link = await self.get_link(user_id, integration_id)
            if link is None:
                raise
            return link
        await db.refresh(self.session, link)
        return link

    async def mark_connected(self, user_id: uuid.UUID, integration_id: uuid.UUID) -> UserIntegration:
        """Flip the link to CONNECTED, stamp last_connected_at and bump popularity."""
        link = await self.ensure_user_integration(user_id, integration_id)
        now = utc_now()

        link.status = IntegrationStatus.CONNECTED
        self.session.add(link)

        history = await self.get_history(link.id)
        if history is None:
            history = UserIntegrationHistory(user_integration_id=link.id, first_connected_at=now)
        history.last_connected_at = now
        self.session.add(history)

        integration = await db.get(self.session, Integration, integration_id)
        if integration is not None:
            integration.popularity = (integration.popularity or 0) + 1
            self.session.add(integration)

        await db.commit(self.session)
        await db.refresh(self.session, link)
        log_info("Integration marked connected", user_id=str(user_id), integration_id=str(integration_id))
        return link

    async def mark_synced(self, link_id: uuid.UUID, synced_at: Optional[datetime] = None) -> None:
        history = await self.get_history(link_id)
        if history is None:
            history = UserIntegrationHistory(user_integration_id=link_id)
        history.last_synced_at = synced_at or utc_now()
        self.session.add(history)
        await db.commit(self.session)

    async def mark_disconnected(self, user_id: uuid.UUID, provider: str) -> Optional[UserIntegration]:
        integration = await self.ensure_integration(provider)
        link = await self.get_link(user_id, integration.id)
        if link is None:
            return None
        link.status = IntegrationStatus.DISCONNECTED
        self.session.add(link)
        await db.commit(self.session)
        await db.refresh(self.session, link)
        log_info("Integration marked disconnected", user_id=str(user_id), provider=provider)
        return link

    async def get_last_synced_at(self, user_id: uuid.UUID, integration_id: uuid.UUID) -> Optional[datetime]:
        link = await self.get_link(user_id, integration_id)
        if link is None:
            return None
        history = await self.get_history(link.id)
        if history is None or history.last_synced_at is None:
            return None
        return ensure_utc(history.last_synced_at)

    async def list_connected_links(self) -> List[Tuple[uuid.UUID, str]]:
        """(user_id, provider) for every CONNECTED link; drives scheduled sync."""
        result = await db.execute(
            self.session,
            select(UserIntegration.user_id, Integration.name)
            .join(Integration, Integration.id == UserIntegration.integration_id)
            .where(
                UserIntegration.status == IntegrationStatus.CONNECTED.value,
                UserIntegration.rec_status == ACTIVE,
            ),
        )
        return [(row[0], row[1]) for row in result.all()]

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        result = await db.execute(
            self.session,
            select(User).where(User.id == user_id, User.rec_status == ACTIVE),
        )
        return result.first()

    # ================================================================================
    # LISTS AND ITEMS
    # ================================================================================

    async def _find_or_create(self, statement, factory):
        result = await db.execute(self.session, statement)
        row = result.first()
        if row is not None:
            return row
        row = factory()
        self.session.add(row)
        try:
            await db.commit(self.session)
        except IntegrityError:
            await db.rollback(self.session)
            result = await db.execute(self.session, statement)
            row = result.first()
            if row is None:
                raise
            return row
        await db.refresh(self.session, row)
        return row

    async def ensure_list_and_category(
        self,
        user_id: uuid.UUID,
        list_name: str,
        category_name: Optional[str] = None,
    ) -> ListTarget:
        """Find or create the List, the user's UserList and (optionally) the category."""
        item_list = await self._find_or_create(
            select(ItemList).where(ItemList.name == list_name, ItemList.rec_status == ACTIVE),
            lambda: ItemList(name=list_name),
        )
        list_id = item_list.id

        user_list = await self._find_or_create(
            select(UserList).where(
                UserList.user_id == user_id,
                UserList.list_id == list_id,
                UserList.rec_status == ACTIVE,
            ),
            lambda: UserList(user_id=user_id, list_id=list_id, custom_name=list_name),
        )

        category = None
        if category_name:
            category = await self._find_or_create(
                select(ItemCategory).where(
                    ItemCategory.list_id == list_id,
                    ItemCategory.name == category_name,
                    ItemCategory.rec_status == ACTIVE,
                ),
                lambda: ItemCategory(list_id=list_id, name=category_name),
            )

        return ListTarget(item_list, user_list, category)

    async def find_item_by_external_id(
        self,
        list_id: uuid.UUID,
        user_list_id: uuid.UUID,
        title: str,
        provider: str,
        external_id: str,
    ) -> Optional[ListItem]:
        result = await db.execute(
            self.session,
            select(ListItem).where(
                ListItem.list_id == list_id,
                ListItem.user_list_id == user_list_id,
                ListItem.title == title,
                ListItem.external_provider == provider,
                ListItem.external_id == external_id,
                ListItem.rec_status == ACTIVE,
            ),
        )
        return result.first()

    async def create_list_item(
        self,
        list_id: uuid.UUID,
        user_list_id: uuid.UUID,
        category_id: Optional[uuid.UUID],
        title: str,
        attributes: Dict[str, Any],
        attribute_data_type: Optional[Dict[str, Any]] = None,
    ) -> ListItem:
        attributes = normalize_attributes(attributes)
        provider, external_id = _external_identity(attributes)
        item = ListItem(
            list_id=list_id,
            user_list_id=user_list_id,
            category_id=category_id,
            title=title,
            attributes=attributes,
            attribute_data_type=normalize_attributes(attribute_data_type or {}),
            external_provider=provider,
            external_id=external_id,
        )
        self.session.add(item)
        await db.commit(self.session)
        await db.refresh(self.session, item)
        return item

    async def upsert_list_item(
        self,
        target: ListTarget,
        title: str,
        attributes: Dict[str, Any],
        attribute_data_type: Optional[Dict[str, Any]] = None,
    ) -> ListItem:
        """
        Create or update an item, deduplicating on its external identity.

        Identity is (list, user list, title, external provider, external id).
        An existing item with identical attributes is returned untouched; a
        changed one is updated in place. Items without an external identity
        are always created.
        """
        attributes = normalize_attributes(attributes)
        attribute_data_type = normalize_attributes(attribute_data_type or {})
        list_id = target.list.id
        user_list_id = target.user_list.id
        category_id = target.category.id if target.category else None
        provider, external_id = _external_identity(attributes)

        if provider is None:
            return await self.create_list_item(
                list_id, user_list_id, category_id, title, attributes, attribute_data_type
            )

        existing = await self.find_item_by_external_id(list_id, user_list_id, title, provider, external_id)
        if existing is None:
            try:
                return await self.create_list_item(
                    list_id, user_list_id, category_id, title, attributes, attribute_data_type
                )
            except IntegrityError:
                # A concurrent sync inserted the same identity first
                await db.rollback(self.session)
                existing = await self.find_item_by_external_id(
                    list_id, user_list_id, title, provider, external_id
                )
                if existing is None:
                    raise
                log_warning(
                    "Concurrent insert detected for list item",
                    provider=provider, external_id=external_id,
                )

        if _canonical(existing.attributes) == _canonical(attributes) and existing.category_id == category_id:
            log_debug("List item unchanged", provider=provider, external_id=external_id)
            return existing

        existing.category_id = category_id
        existing.attributes = attributes
        existing.attribute_data_type = attribute_data_type
        self.session.add(existing)
        await db.commit(self.session)
        await db.refresh(self.session, existing)
        return existing

    async def list_user_items(
        self,
        user_id: uuid.UUID,
        list_name: str,
        limit: Optional[int] = None,
    ) -> List[Tuple[ListItem, Optional[str]]]:
        """
        The user's items in a list with their category name, newest first.
        """
        statement = (
            select(ListItem, ItemCategory.name)
            .join(ItemList, ItemList.id == ListItem.list_id)
            .join(UserList, UserList.id == ListItem.user_list_id)
            .outerjoin(ItemCategory, ItemCategory.id == ListItem.category_id)
            .where(
                ItemList.name == list_name,
                UserList.user_id == user_id,
                ListItem.rec_status == ACTIVE,
            )
            .order_by(ListItem.created_at.desc())
        )
        if limit:
            statement = statement.limit(limit)
        result = await db.execute(self.session, statement)
        return [(row[0], row[1]) for row in result.all()]
