import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def new_id():
    return uuid.uuid4().hex


# Naive UTC, the form every backend hands back.
def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class WeatherRecord(db.Model):
    __tablename__ = "weather_records"

    # Insertion counter; breaks search_date ties so the newest insert lists first.
    seq = db.Column(db.Integer, primary_key=True, autoincrement=True)
    id = db.Column(db.String(32), unique=True, nullable=False, default=new_id)

    location = db.Column(db.Text, nullable=False)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    temperature = db.Column(db.Float, nullable=False)
    feels_like = db.Column(db.Float, nullable=True)
    humidity = db.Column(db.Float, nullable=True)
    wind_speed = db.Column(db.Float, nullable=True)
    visibility = db.Column(db.Float, nullable=True)

    description = db.Column(db.Text, nullable=False)
    condition = db.Column(db.Text, nullable=False)
    forecast = db.Column(db.JSON, nullable=True)

    search_date = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    start_date = db.Column(db.DateTime, nullable=True)
    end_date = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f"<WeatherRecord {self.id} {self.location} {self.search_date}>"


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    username = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password = db.Column(db.Text, nullable=False)

    def __repr__(self):
        return f"<User {self.id} {self.username}>"
