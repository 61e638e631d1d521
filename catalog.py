# catalog.py
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from sqlmodel import Session, select

from config import CatalogConfig
from models import MeasurementItem, PanelDefinition, PanelItem
from normalize.completeness import missing_item_ids

logger = logging.getLogger(__name__)


class PanelCatalog:
    """
    In-memory panel → required items table.
    Loaded once at startup and shared by reference; every lookup is pure.
    """

    def __init__(self, panels: Dict[int, PanelDefinition], items: Dict[int, MeasurementItem],
                 requirements: Dict[int, Tuple[int, ...]]):
        self._panels = dict(panels)
        self._items = dict(items)
        self._requirements = dict(requirements)
        self._items_by_name = {item.name: item for item in self._items.values()}
        self._items_by_lower_name = {item.name.lower(): item for item in self._items.values()}

    @classmethod
    def load(cls, session: Session) -> "PanelCatalog":
        panels = {p.id: p for p in session.exec(select(PanelDefinition)).all()}
        items = {i.id: i for i in session.exec(select(MeasurementItem)).all()}
        links = session.exec(
            select(PanelItem).order_by(PanelItem.panel_id, PanelItem.position, PanelItem.item_id)
        ).all()
        requirements: Dict[int, List[int]] = {panel_id: [] for panel_id in panels}
        for link in links:
            requirements.setdefault(link.panel_id, []).append(link.item_id)
        # Detach copies so the catalog outlives the session
        for obj in list(panels.values()) + list(items.values()):
            session.expunge(obj)
        logger.info(f"Loaded panel catalog: {len(panels)} panels, {len(items)} items")
        return cls(panels, items, {k: tuple(v) for k, v in requirements.items()})

    def has_panel(self, panel_id: int) -> bool:
        return panel_id in self._panels

    def panel(self, panel_id: int) -> Optional[PanelDefinition]:
        return self._panels.get(panel_id)

    @property
    def panels(self) -> List[PanelDefinition]:
        return [self._panels[k] for k in sorted(self._panels)]

    def item(self, item_id: int) -> Optional[MeasurementItem]:
        return self._items.get(item_id)

    def item_by_column(self, column: str) -> Optional[MeasurementItem]:
        """Resolve an upload column header to a measurement item."""
        name = str(column).strip()
        return self._items_by_name.get(name) or self._items_by_lower_name.get(name.lower())

    def required_item_ids(self, panel_id: int) -> Tuple[int, ...]:
        return self._requirements.get(panel_id, ())

    def demographic_items(self, panel_id: int) -> List[MeasurementItem]:
        return [
            self._items[item_id]
            for item_id in self.required_item_ids(panel_id)
            if item_id in self._items and self._items[item_id].is_demographic
        ]

    def missing_item_ids(self, panel_id: int, stored_ids: Iterable[int]) -> List[int]:
        return missing_item_ids(self.required_item_ids(panel_id), stored_ids)


def seed_catalog(session: Session, catalog_cfg: CatalogConfig) -> int:
    """
    Insert panel and item reference data that is not in the store yet.
    Returns the number of rows added.
    """
    added = 0
    for item_cfg in catalog_cfg.items:
        if session.get(MeasurementItem, item_cfg.id) is None:
            session.add(MeasurementItem(**item_cfg.model_dump()))
            added += 1
    session.flush()

    for panel_cfg in catalog_cfg.panels:
        if session.get(PanelDefinition, panel_cfg.id) is None:
            session.add(PanelDefinition(id=panel_cfg.id, name=panel_cfg.name))
            added += 1
        session.flush()
        for position, item_id in enumerate(panel_cfg.items):
            if session.get(PanelItem, (panel_cfg.id, item_id)) is None:
                session.add(PanelItem(panel_id=panel_cfg.id, item_id=item_id, position=position))
                added += 1
    session.commit()
    logger.info(f"Seeded panel catalog: {added} rows added")
    return added
