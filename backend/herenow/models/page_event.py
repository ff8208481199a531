from sqlalchemy import Column, String, DateTime, Index, Uuid
from sqlalchemy.sql import func
import uuid
from herenow.database.connection import Base


class PageEvent(Base):
    """Визит на страницу. Только вставка, без обновлений и удалений."""
    __tablename__ = "page_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    domain = Column(String(255), nullable=False)
    path = Column(String(2048), nullable=False)
    user_id = Column(String(255), nullable=False)  # постоянный id браузера
    session_id = Column(String(255), nullable=False)
    user_agent = Column(String(1024), nullable=True)
    # Время сервера, не клиента
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        Index('ix_page_events_domain_path', 'domain', 'path'),
        Index('ix_page_events_domain_path_timestamp', 'domain', 'path', 'timestamp'),
    )
