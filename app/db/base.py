import re
from typing import Any

from sqlalchemy.orm import as_declarative, declared_attr

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


@as_declarative()
class Base:
    id: Any
    __name__: str

    # 'InboundShipmentSplit' maps to 'inbound_shipment_split' unless the model names its table.
    @declared_attr
    def __tablename__(cls) -> str:
        return _CAMEL_BOUNDARY.sub("_", cls.__name__).lower()
