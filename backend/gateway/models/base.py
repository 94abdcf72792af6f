"""Declarative base shared by the gateway tables."""

from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase

NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """One metadata object, so ``GatewayStore.open`` creates every table with a single ``create_all``."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)
