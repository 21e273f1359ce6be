from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    false,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid_utils
import uuid


def generate_uuid7():
    """Generate UUIDv7 and convert to standard Python UUID"""
    uuid7_obj = uuid_utils.uuid7()
    return uuid.UUID(str(uuid7_obj))


JSONType = JSON().with_variant(JSONB(), "postgresql")

Base = declarative_base()


class Publication(Base):
    __tablename__ = 'publications'

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    name = Column(String(500), nullable=False, default="Unknown")
    subdomain = Column(String(500), nullable=False, default="")
    custom_domain = Column(String(500))
    author_id = Column(BigInteger, index=True)
    logo_url = Column(String(2000))
    hero_text = Column(Text)
    language = Column(String(20))
    created_at = Column(DateTime, default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Publication(id={self.id}, name='{self.name}', subdomain='{self.subdomain}')>"


class PublicationLink(Base):
    """Crawl subject for the ``notes`` and ``posts`` sweeps."""

    __tablename__ = 'publication_links'

    id = Column(BigInteger, ForeignKey('publications.id', ondelete='CASCADE'), primary_key=True, autoincrement=False)
    url = Column(String(2000), nullable=False)
    status = Column(String(50), nullable=False, default="completed")
    is_notes_scraping = Column(Boolean, nullable=False, default=False, server_default=false())
    notes_leased_at = Column(DateTime)
    is_posts_scraping = Column(Boolean, nullable=False, default=False, server_default=false())
    posts_leased_at = Column(DateTime)

    def __repr__(self):
        return f"<PublicationLink(id={self.id}, url='{self.url}')>"


class Byline(Base):
    """Author byline; also the crawl subject for the ``profiles`` sweep."""

    __tablename__ = 'bylines'

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    name = Column(String(500))
    handle = Column(String(500))
    previous_name = Column(String(500))
    photo_url = Column(String(2000))
    bio = Column(Text)
    profile_set_up_at = Column(String(100))
    twitter_screen_name = Column(String(200))
    is_guest = Column(Boolean)
    bestseller_tier = Column(Integer)
    is_profile_scraping = Column(Boolean, nullable=False, default=False, server_default=false())
    profile_leased_at = Column(DateTime)

    def __repr__(self):
        return f"<Byline(id={self.id}, handle='{self.handle}')>"


class BylineData(Base):
    __tablename__ = 'byline_data'

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    slug = Column(String(500))
    subscriber_count = Column(BigInteger)
    subscriber_count_number = Column(BigInteger)
    subscriber_count_string = Column(String(200))
    bestseller_tier = Column(Integer)
    photo_url = Column(String(2000))
    profile_set_up_at = Column(String(100))
    rough_num_free_subscribers = Column(BigInteger)
    rough_num_free_subscribers_int = Column(BigInteger)


class Post(Base):
    __tablename__ = 'posts'

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    publication_id = Column(BigInteger, nullable=False, index=True)
    title = Column(Text)
    social_title = Column(Text)
    search_engine_title = Column(Text)
    search_engine_description = Column(Text)
    subtitle = Column(Text)
    slug = Column(String(1000))
    post_date = Column(DateTime, index=True)
    audience = Column(String(100))
    canonical_url = Column(String(2000))
    description = Column(Text)
    cover_image = Column(String(2000))
    body_text = Column(Text)
    truncated_body_text = Column(Text)
    wordcount = Column(Integer)
    reactions = Column(JSONType)
    reaction_count = Column(Integer)
    comment_count = Column(Integer)
    child_comment_count = Column(Integer)
    hidden = Column(Boolean)
    explicit = Column(Boolean)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Post(id={self.id}, publication_id={self.publication_id}, slug='{self.slug}')>"


class PostByline(Base):
    __tablename__ = 'post_bylines'

    post_id = Column(BigInteger, primary_key=True, autoincrement=False)
    byline_id = Column(BigInteger, primary_key=True, autoincrement=False)


class NoteComment(Base):
    __tablename__ = 'notes_comments'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    comment_id = Column(String(100), nullable=False)
    user_id = Column(String(100), nullable=False, index=True)
    type = Column(String(50))
    body = Column(Text)
    body_json = Column(JSONType)
    date = Column(DateTime)
    handle = Column(String(500))
    name = Column(String(500))
    photo_url = Column(String(2000))
    reaction_count = Column(Integer)
    restacks = Column(Integer)
    restacked = Column(Boolean)
    timestamp = Column(DateTime, index=True)
    context_type = Column(String(100))
    entity_key = Column(String(200))
    note_is_restacked = Column(Boolean)
    reactions = Column(JSONType)
    children_count = Column(Integer)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('comment_id', 'user_id', name='uq_notes_comments_comment_user'),
    )

    def __repr__(self):
        return f"<NoteComment(comment_id={self.comment_id}, user_id={self.user_id})>"


class CommentAttachment(Base):
    __tablename__ = 'comment_attachments'

    id = Column(String(200), primary_key=True)
    comment_id = Column(String(100), nullable=False)
    attachment_id = Column(String(200), nullable=False)
    type = Column(String(100))
    image_url = Column(String(2000))

    __table_args__ = (
        Index('ix_comment_attachments_comment_id', 'comment_id'),
    )
