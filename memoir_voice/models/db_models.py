"""
SQLAlchemy table definitions for users, calls, transcripts, memories and memoir chapters.
The module imports the shared `metadata` from memoir_voice.db.db so `connect_db()` can create tables.

Timestamps are stored as ISO strings and JSON blobs (embeddings, id lists) as text.
"""
import sqlalchemy as sa
from memoir_voice.db.db import get_metadata

metadata = get_metadata()

profiles = sa.Table(
    "profiles",
    metadata,
    sa.Column("id", sa.String(length=64), primary_key=True),
    sa.Column("full_name", sa.String(length=256), nullable=True),
    sa.Column("preferred_name", sa.String(length=256), nullable=True),
    sa.Column("onboarding_completed", sa.Boolean, nullable=False, default=False),
    sa.Column("created_at", sa.String(length=64), nullable=True),
)

user_phones = sa.Table(
    "user_phones",
    metadata,
    sa.Column("id", sa.String(length=64), primary_key=True),
    sa.Column("user_id", sa.String(length=64), index=True, nullable=False),
    sa.Column("phone_number", sa.String(length=32), unique=True, nullable=False),
    sa.Column("is_verified", sa.Boolean, nullable=False, default=False),
    sa.Column("is_primary", sa.Boolean, nullable=False, default=False),
)

user_balances = sa.Table(
    "user_balances",
    metadata,
    sa.Column("user_id", sa.String(length=64), primary_key=True),
    sa.Column("balance_cents", sa.Integer, nullable=False, default=0),
    sa.Column("total_spent_cents", sa.Integer, nullable=False, default=0),
    sa.Column("updated_at", sa.String(length=64), nullable=True),
)

balance_transactions = sa.Table(
    "balance_transactions",
    metadata,
    sa.Column("id", sa.String(length=64), primary_key=True),
    sa.Column("user_id", sa.String(length=64), index=True, nullable=False),
    sa.Column("amount_cents", sa.Integer, nullable=False),
    sa.Column("type", sa.String(length=32), nullable=False),
    sa.Column("call_id", sa.String(length=64), nullable=True),
    sa.Column("created_at", sa.String(length=64), nullable=True),
)

calls = sa.Table(
    "calls",
    metadata,
    sa.Column("id", sa.String(length=64), primary_key=True),
    sa.Column("user_id", sa.String(length=64), index=True, nullable=True),
    sa.Column("call_sid", sa.String(length=128), unique=True, nullable=False),
    sa.Column("caller_phone", sa.String(length=64), nullable=False),
    sa.Column("direction", sa.String(length=16), nullable=False),
    sa.Column("status", sa.String(length=32), nullable=False),
    sa.Column("duration_seconds", sa.Integer, nullable=False, default=0),
    sa.Column("cost_cents", sa.Integer, nullable=False, default=0),
    sa.Column("voice_ai_conversation_id", sa.String(length=128), index=True, nullable=True),
    sa.Column("started_at", sa.String(length=64), nullable=True),
    sa.Column("ended_at", sa.String(length=64), nullable=True),
    sa.Column("billed_at", sa.String(length=64), nullable=True),
    sa.Column("memories_extracted_at", sa.String(length=64), nullable=True),
    sa.Column("created_at", sa.String(length=64), nullable=True),
)

conversation_messages = sa.Table(
    "conversation_messages",
    metadata,
    sa.Column("id", sa.String(length=64), primary_key=True),
    sa.Column("call_id", sa.String(length=64), index=True, nullable=False),
    sa.Column("role", sa.String(length=16), nullable=False),
    sa.Column("content", sa.Text, nullable=False),
    sa.Column("audio_url", sa.Text, nullable=True),
    sa.Column("timestamp_ms", sa.BigInteger, nullable=False),
)

user_memories = sa.Table(
    "user_memories",
    metadata,
    sa.Column("id", sa.String(length=64), primary_key=True),
    sa.Column("user_id", sa.String(length=64), index=True, nullable=False),
    sa.Column("call_id", sa.String(length=64), nullable=True),
    sa.Column("content", sa.Text, nullable=False),
    sa.Column("category", sa.String(length=32), nullable=False),
    sa.Column("importance_score", sa.Float, nullable=False, default=0.5),
    sa.Column("time_period", sa.String(length=64), nullable=True),
    sa.Column("embedding_json", sa.Text, nullable=True),
    sa.Column("is_active", sa.Boolean, nullable=False, default=True),
    sa.Column("created_at", sa.String(length=64), nullable=True),
)

memoir_chapters = sa.Table(
    "memoir_chapters",
    metadata,
    sa.Column("id", sa.String(length=64), primary_key=True),
    sa.Column("user_id", sa.String(length=64), index=True, nullable=False),
    sa.Column("title", sa.String(length=256), nullable=False),
    sa.Column("slug", sa.String(length=128), nullable=False),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column("display_order", sa.Integer, nullable=False, default=0),
    sa.Column("is_default", sa.Boolean, nullable=False, default=False),
)

chapter_content = sa.Table(
    "chapter_content",
    metadata,
    sa.Column("id", sa.String(length=64), primary_key=True),
    sa.Column("chapter_id", sa.String(length=64), index=True, nullable=False),
    sa.Column("content", sa.Text, nullable=False),
    sa.Column("version", sa.Integer, nullable=False),
    sa.Column("word_count", sa.Integer, nullable=False),
    sa.Column("story_ids_json", sa.Text, nullable=False),
    sa.Column("is_current", sa.Boolean, nullable=False, default=True),
    sa.Column("generated_at", sa.String(length=64), nullable=True),
)

chapter_stories = sa.Table(
    "chapter_stories",
    metadata,
    sa.Column("id", sa.String(length=64), primary_key=True),
    sa.Column("chapter_id", sa.String(length=64), index=True, nullable=False),
    sa.Column("user_id", sa.String(length=64), index=True, nullable=False),
    sa.Column("content", sa.Text, nullable=False),
    sa.Column("title", sa.String(length=512), nullable=True),
    sa.Column("summary", sa.Text, nullable=True),
    sa.Column("time_period", sa.String(length=64), nullable=True),
    sa.Column("content_hash", sa.String(length=64), index=True, nullable=False),
    sa.Column("source_type", sa.String(length=16), nullable=False),
    sa.Column("source_id", sa.String(length=64), nullable=True),
    sa.Column("is_active", sa.Boolean, nullable=False, default=True),
    sa.Column("created_at", sa.String(length=64), nullable=True),
)
