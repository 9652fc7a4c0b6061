'''
Record storage for the weather app.

Every backend implements the same RecordStore contract. select_store() picks
one when the app is created and that choice holds for the app's lifetime:

    memory   - no DATABASE_URL configured, or the configured store is down
    mongo    - mongodb:// or mongodb+srv:// URL
    sql      - anything else SQLAlchemy understands (sqlite, postgresql, ...)
'''
import abc
import logging
import re
import threading
import uuid
from datetime import timedelta

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import models
from models import db, utcnow
from schemas import User, WeatherRecord

logger = logging.getLogger(__name__)

MONGO_SCHEMES = ("mongodb://", "mongodb+srv://")
DEFAULT_MONGO_DATABASE = "weather_app"


class StoreError(RuntimeError):
    """A persistence operation failed after the backend was chosen."""


class StoreUnavailable(StoreError):
    """The configured external store could not be reached at startup."""


class UsernameTaken(StoreError):
    def __init__(self, username):
        super().__init__(f"Username {username!r} is already taken")
        self.username = username


def mask_url(url):
    """Hide the password part of a connection string for logging."""
    return re.sub(r"(//[^:/@]+):[^@]*@", r"\1:***@", url or "")


class RecordStore(abc.ABC):
    kind = "abstract"

    @abc.abstractmethod
    def create_record(self, data):
        """Persist a WeatherRecordCreate; return the stored WeatherRecord."""

    @abc.abstractmethod
    def list_records(self):
        """All records, newest search_date first."""

    @abc.abstractmethod
    def get_record(self, record_id):
        """The WeatherRecord, or None."""

    @abc.abstractmethod
    def update_record(self, record_id, changes):
        """Apply a WeatherRecordUpdate; return the merged record, or None."""

    @abc.abstractmethod
    def delete_record(self, record_id):
        """True when a record was removed."""

    @abc.abstractmethod
    def create_user(self, data):
        pass

    @abc.abstractmethod
    def get_user(self, user_id):
        pass

    @abc.abstractmethod
    def get_user_by_username(self, username):
        pass


# ---------------------------------------------------------------------------
# In-memory backend (development and tests; nothing survives a restart)
# ---------------------------------------------------------------------------

class MemoryStore(RecordStore):
    kind = "memory"

    def __init__(self):
        self._records = {}
        self._users = {}
        self._lock = threading.Lock()

    def create_record(self, data):
        record = WeatherRecord(id=uuid.uuid4().hex, search_date=utcnow(), **data.model_dump())
        with self._lock:
            self._records[record.id] = record
        return record.model_copy(deep=True)

    def list_records(self):
        with self._lock:
            newest_insert_first = [record.model_copy(deep=True) for record in reversed(self._records.values())]
        # sorted() is stable, so equal timestamps keep newest-insert-first order.
        return sorted(newest_insert_first, key=lambda record: record.search_date, reverse=True)

    def get_record(self, record_id):
        with self._lock:
            record = self._records.get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    def update_record(self, record_id, changes):
        with self._lock:
            existing = self._records.get(record_id)
            if existing is None:
                return None
            updated = existing.merged(changes.changes())
            self._records[record_id] = updated
        return updated.model_copy(deep=True)

    def delete_record(self, record_id):
        with self._lock:
            return self._records.pop(record_id, None) is not None

    def create_user(self, data):
        with self._lock:
            if any(user.username == data.username for user in self._users.values()):
                raise UsernameTaken(data.username)
            user = User(id=uuid.uuid4().hex, **data.model_dump())
            self._users[user.id] = user
        return user

    def get_user(self, user_id):
        return self._users.get(user_id)

    def get_user_by_username(self, username):
        for user in self._users.values():
            if user.username == username:
                return user
        return None


# ---------------------------------------------------------------------------
# MongoDB backend
# ---------------------------------------------------------------------------

def _object_id(value):
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


# BSON dates keep milliseconds only; rounding up keeps the stamp at or after the call.
def _bson_now():
    now = utcnow()
    spare = now.microsecond % 1000
    if spare:
        now += timedelta(microseconds=1000 - spare)
    return now


def _from_document(schema, document):
    if document is None:
        return None
    data = dict(document)
    data["id"] = str(data.pop("_id"))
    return schema.model_validate(data)


class MongoStore(RecordStore):
    """Documents keep the camelCase wire names; unset optional fields are omitted."""

    kind = "mongo"

    def __init__(self, database):
        self.database = database
        self.records = database["weather_records"]
        self.users = database["users"]
        self.users.create_index("username", unique=True)

    @classmethod
    def connect(cls, url, timeout):
        timeout_ms = int(timeout * 1000)
        client = MongoClient(url, serverSelectionTimeoutMS=timeout_ms, connectTimeoutMS=timeout_ms)
        try:
            client.admin.command("ping")
            return cls(client.get_default_database(default=DEFAULT_MONGO_DATABASE))
        except PyMongoError:
            client.close()
            raise

    def create_record(self, data):
        document = data.model_dump(by_alias=True, exclude_none=True)
        document["searchDate"] = _bson_now()
        result = self.records.insert_one(document)
        return _from_document(WeatherRecord, document | {"_id": result.inserted_id})

    def list_records(self):
        cursor = self.records.find().sort([("searchDate", DESCENDING), ("_id", DESCENDING)])
        return [_from_document(WeatherRecord, document) for document in cursor]

    def get_record(self, record_id):
        object_id = _object_id(record_id)
        if object_id is None:
            return None
        return _from_document(WeatherRecord, self.records.find_one({"_id": object_id}))

    def update_record(self, record_id, changes):
        object_id = _object_id(record_id)
        if object_id is None:
            return None
        supplied = changes.model_dump(by_alias=True, include=changes.model_fields_set)
        to_set = {key: value for key, value in supplied.items() if value is not None}
        to_unset = {key: "" for key, value in supplied.items() if value is None}
        update = {}
        if to_set:
            update["$set"] = to_set
        if to_unset:
            update["$unset"] = to_unset
        if not update:
            return self.get_record(record_id)
        document = self.records.find_one_and_update(
            {"_id": object_id}, update, return_document=ReturnDocument.AFTER
        )
        return _from_document(WeatherRecord, document)

    def delete_record(self, record_id):
        object_id = _object_id(record_id)
        if object_id is None:
            return False
        return self.records.delete_one({"_id": object_id}).deleted_count == 1

    def create_user(self, data):
        document = data.model_dump()
        try:
            result = self.users.insert_one(document)
        except DuplicateKeyError as exc:
            raise UsernameTaken(data.username) from exc
        return _from_document(User, document | {"_id": result.inserted_id})

    def get_user(self, user_id):
        object_id = _object_id(user_id)
        if object_id is None:
            return None
        return _from_document(User, self.users.find_one({"_id": object_id}))

    def get_user_by_username(self, username):
        return _from_document(User, self.users.find_one({"username": username}))


# ---------------------------------------------------------------------------
# SQL backend (Flask-SQLAlchemy; needs an app context, which requests provide)
# ---------------------------------------------------------------------------

def _column_value(name, value):
    if name == "forecast" and value is not None:
        return [day.to_json() for day in value]
    return value


def _record_from_row(row):
    if row is None:
        return None
    return WeatherRecord.model_validate({name: getattr(row, name) for name in WeatherRecord.model_fields})


def _user_from_row(row):
    if row is None:
        return None
    return User(id=row.id, username=row.username, password=row.password)


class SqlStore(RecordStore):
    kind = "sql"

    def _row(self, record_id):
        return db.session.execute(
            db.select(models.WeatherRecord).filter_by(id=record_id)
        ).scalar_one_or_none()

    def create_record(self, data):
        values = {name: _column_value(name, getattr(data, name)) for name in type(data).model_fields}
        row = models.WeatherRecord(id=models.new_id(), search_date=utcnow(), **values)
        db.session.add(row)
        db.session.commit()
        return _record_from_row(row)

    def list_records(self):
        rows = db.session.execute(
            db.select(models.WeatherRecord).order_by(
                models.WeatherRecord.search_date.desc(), models.WeatherRecord.seq.desc()
            )
        ).scalars()
        return [_record_from_row(row) for row in rows]

    def get_record(self, record_id):
        return _record_from_row(self._row(record_id))

    def update_record(self, record_id, changes):
        row = self._row(record_id)
        if row is None:
            return None
        for name, value in changes.changes().items():
            setattr(row, name, _column_value(name, value))
        db.session.commit()
        return _record_from_row(row)

    def delete_record(self, record_id):
        row = self._row(record_id)
        if row is None:
            return False
        db.session.delete(row)
        db.session.commit()
        return True

    def create_user(self, data):
        row = models.User(id=models.new_id(), username=data.username, password=data.password)
        db.session.add(row)
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            raise UsernameTaken(data.username) from exc
        return _user_from_row(row)

    def get_user(self, user_id):
        return _user_from_row(db.session.get(models.User, user_id))

    def get_user_by_username(self, username):
        row = db.session.execute(
            db.select(models.User).filter_by(username=username)
        ).scalar_one_or_none()
        return _user_from_row(row)


def _engine_options(url, timeout):
    if url.startswith("sqlite"):
        return {"connect_args": {"timeout": timeout}}
    return {"connect_args": {"connect_timeout": int(timeout)}, "pool_pre_ping": True}


def _connect_sql(app, url, timeout):
    app.config["SQLALCHEMY_DATABASE_URI"] = url
    app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", _engine_options(url, timeout))
    db.init_app(app)
    with app.app_context():
        db.create_all()
    return SqlStore()


# Picks the backend once; the result is stored on the app by create_app.
def select_store(app):
    url = app.config.get("DATABASE_URL")
    if not url:
        logger.info("No DATABASE_URL configured; using in-memory storage (records are lost on restart)")
        return MemoryStore()

    timeout = float(app.config.get("STORE_CONNECT_TIMEOUT", 5))
    try:
        if url.startswith(MONGO_SCHEMES):
            store = MongoStore.connect(url, timeout)
        else:
            store = _connect_sql(app, url, timeout)
    except (PyMongoError, SQLAlchemyError, ImportError) as exc:
        if not app.config.get("STORE_FALLBACK", True):
            raise StoreUnavailable(f"Could not connect to {mask_url(url)}: {exc}") from exc
        logger.warning("Could not connect to %s (%s); falling back to in-memory storage", mask_url(url), exc)
        return MemoryStore()

    logger.info("Connected to %s store at %s", store.kind, mask_url(url))
    return store
