"""Tables backing the persisted provider session and listing cache."""
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CourseCorrelationToken(Base):
    __tablename__ = "zoom_course_scid"

    course_id = Column(String(32), primary_key=True)
    scid = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class StoredCookie(Base):
    __tablename__ = "zoom_cookie"

    host = Column(String(255), primary_key=True)
    name = Column(String(255), primary_key=True)
    path = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    expires = Column(Integer, nullable=True)  # epoch seconds, 0/NULL = session cookie
    secure = Column(Boolean, nullable=False, default=False)
    http_only = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, default=datetime.utcnow)


class RequestHeader(Base):
    __tablename__ = "zoom_request_headers"

    course_id = Column(String(32), primary_key=True)
    request_path = Column(String(255), primary_key=True)
    header_name = Column(String(255), primary_key=True)
    header_value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow)


class ReplayHeaderRow(Base):
    __tablename__ = "zoom_replay_headers"

    course_id = Column(String(32), primary_key=True)
    referer = Column(String(1024), primary_key=True)
    download_url = Column(Text, nullable=False)
    headers = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MeetingRow(Base):
    __tablename__ = "zoom_meetings"

    course_id = Column(String(32), primary_key=True)
    meeting_id = Column(String(255), primary_key=True)
    payload = Column(JSON, nullable=False)
    fetched_at = Column(DateTime, default=datetime.utcnow)


class RecordingFileRow(Base):
    __tablename__ = "zoom_files"

    meeting_id = Column(String(255), primary_key=True)
    play_url = Column(String(1024), primary_key=True)
    course_id = Column(String(32), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    fetched_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<RecordingFileRow(meeting_id='{self.meeting_id}', play_url='{self.play_url}')>"
