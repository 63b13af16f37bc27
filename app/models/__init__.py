# Import the declarative base
from app.db.base import Base

# Import all models for Alembic/SQLAlchemy discovery
# Note: These imports are required so that they register themselves on Base.metadata
from app.models.warehouse import Warehouse  # noqa: F401
from app.models.shipment import (  # noqa: F401
    InboundShipmentSplit,
    Shipment,
    ShipmentBox,
    ShipmentBoxItem,
    ShipmentItem,
)
