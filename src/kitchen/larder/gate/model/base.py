from sqlalchemy import String, orm
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import mapped_column

from typing_extensions import Annotated

str64 = Annotated[str, 64]
str512 = Annotated[str, 512]
guidpk = Annotated[str, mapped_column(String(64), primary_key=True)]


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str64: String(64),
        str512: String(512),
        guidpk: String(64),
    }


def dialect_insert(database_session: AsyncSession, model):
    """Create an INSERT for the bound dialect that supports `on_conflict_do_nothing`
    and `on_conflict_do_update`."""
    if database_session.get_bind().dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)
