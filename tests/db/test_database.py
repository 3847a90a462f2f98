import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError

from core.exceptions import ConfigurationError, InternalError, PersistenceError, RideNotFound
from db.database import create_db_engine, init_database
from db.errors import translate_errors


@pytest.mark.unit
class TestInitDatabase:
    def test_creates_tables(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'nested' / 'dispatch.db'}"
        factory = init_database(url)

        tables = inspect(factory.kw["bind"]).get_table_names()
        assert {"rides", "drivers"} <= set(tables)
        assert (tmp_path / "nested" / "dispatch.db").exists()

    def test_creates_partial_unique_indexes(self, session_factory):
        indexes = {i["name"] for i in inspect(session_factory.kw["bind"]).get_indexes("rides")}
        assert {"uq_rides_active_rider", "uq_rides_active_driver"} <= indexes

    def test_in_memory_url(self):
        engine = create_db_engine("sqlite:///:memory:")
        assert engine.url.get_backend_name() == "sqlite"

    def test_rejects_unsupported_backend(self):
        with pytest.raises(ConfigurationError) as exc_info:
            create_db_engine("mysql://user@localhost/rides")
        assert exc_info.value.details == {"backend": "mysql"}


@pytest.mark.unit
class TestTranslateErrors:
    def test_passes_through_engine_errors(self):
        with pytest.raises(RideNotFound), translate_errors("get_ride"):
            raise RideNotFound("missing")

    def test_operational_error_is_transient(self):
        with pytest.raises(PersistenceError) as exc_info, translate_errors("accept_ride"):
            raise OperationalError("UPDATE rides", {}, Exception("database is locked"))
        assert exc_info.value.details == {"operation": "accept_ride"}

    def test_other_sqlalchemy_errors_are_internal(self):
        with pytest.raises(InternalError), translate_errors("book_ride"):
            raise ProgrammingError("SELECT", {}, Exception("syntax error"))

    def test_integrity_error_is_internal_when_not_mapped(self):
        with pytest.raises(InternalError), translate_errors("book_ride"):
            raise IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed"))
