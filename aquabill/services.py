from dataclasses import dataclass
from typing import Callable, Optional
import logging

from aquabill.bill_lifecycle import BillLifecycle
from aquabill.billing_engine import BillingEngine
from aquabill.config.settings import settings
from aquabill.dashboards import Dashboards
from aquabill.directory import Directory
from aquabill.events import EventBus
from aquabill.flat_registry import FlatRegistry
from aquabill.property_registry import PropertyRegistry
from aquabill.storage_manager import StorageManager
from aquabill.tenancy import TenancyLifecycle
from aquabill.utils.file_storage import FileStorage, LocalFileStorage

logger = logging.getLogger(__name__)


@dataclass
class Services:
    storage: StorageManager
    events: EventBus
    directory: Directory
    properties: PropertyRegistry
    flats: FlatRegistry
    tenancy: TenancyLifecycle
    billing: BillingEngine
    lifecycle: BillLifecycle
    dashboards: Dashboards


def create_services(
    database_url: Optional[str] = None,
    file_storage: Optional[FileStorage] = None,
    token_source: Optional[Callable[[int], str]] = None,
    events: Optional[EventBus] = None,
) -> Services:
    """Wire every component against one store and one event bus"""
    storage = StorageManager(database_url)
    events = events or EventBus()
    file_storage = file_storage or LocalFileStorage(settings.upload_dir)
    properties = PropertyRegistry(storage, events)

    services = Services(
        storage=storage,
        events=events,
        directory=Directory(storage, events),
        properties=properties,
        flats=FlatRegistry(storage, events),
        tenancy=TenancyLifecycle(storage, events, token_source=token_source),
        billing=BillingEngine(storage, events),
        lifecycle=BillLifecycle(storage, events, file_storage),
        dashboards=Dashboards(storage, events, properties),
    )
    logger.info(f"Billing services initialized against {storage.engine.url.render_as_string(hide_password=True)}")
    return services
