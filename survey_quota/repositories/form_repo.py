import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from survey_quota.models.orm.form import FormORM
from survey_quota.models.schemas.form import FormCreateModel


class FormRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def create_form(self, form_data: FormCreateModel) -> FormORM:
        """
        Creates a new form record.

        The quota settings were validated when the request was parsed and
        are stored in their camelCase wire shape.
        """
        form_dict = form_data.model_dump(exclude={"quota_settings"})
        form_dict["form_id"] = str(uuid.uuid4())
        if form_data.quota_settings is not None:
            form_dict["quota_settings"] = form_data.quota_settings.model_dump(by_alias=True)

        db_form = FormORM(**form_dict)
        try:
            self.db.add(db_form)
            self.db.commit()
            self.db.refresh(db_form)
            return db_form

        except IntegrityError as e:
            self.db.rollback()
            raise ValueError(f"Database integrity error: {e}")

        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred during form creation: {e}")

    def get_form(self, form_id: str) -> FormORM | None:
        stmt = select(FormORM).where(FormORM.form_id == form_id)
        return self.db.scalars(stmt).one_or_none()
