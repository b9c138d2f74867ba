from db.database import Base
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func


class Song(Base):
    """
    A streamable media item.

    ``storage_ref`` is the private backing reference (object key, file path
    or upstream URL). It is only ever handed to the storage layer and must
    never be serialized to clients.
    """

    __tablename__ = "songs"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    artist = Column(String(200), nullable=False, default="Unknown Artist")
    storage_ref = Column(String(1024), nullable=False)
    content_type = Column(String(100), nullable=True)
    cover_url = Column(String(1024), nullable=True)
    uploaded_by = Column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    uploader = relationship("User", back_populates="songs")

    def __repr__(self):
        return f"<Song(id={self.id}, title='{self.title}')>"
