from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")


class CustomBase:
    # Columns worth showing besides the primary key; article text is left out
    __repr_extra__ = ("form_id", "short_id", "status")

    def __repr__(self) -> str:
        class_name = self.__class__.__name__

        names = [c.name for c in self.__table__.primary_key.columns]
        names += [n for n in self.__repr_extra__ if n in self.__table__.columns and n not in names]

        column_str = ", ".join(f"{name}={getattr(self, name)!r}" for name in names)

        return f"{class_name}({column_str})"


Base = declarative_base(cls=CustomBase)
