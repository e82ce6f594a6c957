import hashlib
import hmac
import json
import secrets
import sqlite3
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator
import aiosqlite

from chatcommerce.errors import ConflictError, NotFoundError
from chatcommerce.models.schemas import ShippingAddress, User

PASSWORD_ITERATIONS = 200_000


async def init_db(db_path: str):
    """Create tables if they don't exist. Called once on app startup."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await db.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id               TEXT PRIMARY KEY,
                email            TEXT NOT NULL UNIQUE,
                name             TEXT NOT NULL,
                phone            TEXT,
                password_hash    TEXT NOT NULL,
                shipping_address TEXT,
                created_at       TEXT NOT NULL DEFAULT (datetime('now')),
                updated_at       TEXT NOT NULL DEFAULT (datetime('now'))
            );

            CREATE TABLE IF NOT EXISTS auth_tokens (
                token       TEXT PRIMARY KEY,
                user_id     TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                created_at  TEXT NOT NULL DEFAULT (datetime('now'))
            );

            CREATE TABLE IF NOT EXISTS products (
                id          TEXT PRIMARY KEY,
                name        TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                brand       TEXT NOT NULL,
                price       REAL NOT NULL CHECK (price >= 0),
                category    TEXT NOT NULL,
                sizes       TEXT NOT NULL DEFAULT '[]',
                colors      TEXT NOT NULL DEFAULT '[]',
                stock       INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
                gender      TEXT NOT NULL DEFAULT 'unisex',
                image       TEXT NOT NULL DEFAULT '',
                created_at  TEXT NOT NULL DEFAULT (datetime('now')),
                updated_at  TEXT NOT NULL DEFAULT (datetime('now'))
            );

            CREATE INDEX IF NOT EXISTS idx_products_category ON products(category);
            CREATE INDEX IF NOT EXISTS idx_products_brand ON products(brand);

            CREATE TABLE IF NOT EXISTS carts (
                id           TEXT PRIMARY KEY,
                user_id      TEXT NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
                items        TEXT NOT NULL DEFAULT '[]',
                total_amount REAL NOT NULL DEFAULT 0 CHECK (total_amount >= 0),
                version      INTEGER NOT NULL DEFAULT 0,
                created_at   TEXT NOT NULL DEFAULT (datetime('now')),
                updated_at   TEXT NOT NULL DEFAULT (datetime('now'))
            );

            CREATE TABLE IF NOT EXISTS orders (
                id                     TEXT PRIMARY KEY,
                order_number           TEXT NOT NULL UNIQUE,
                user_id                TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                items                  TEXT NOT NULL DEFAULT '[]',
                total_amount           REAL NOT NULL CHECK (total_amount >= 0),
                status                 TEXT NOT NULL DEFAULT 'pending',
                payment_status         TEXT NOT NULL DEFAULT 'pending',
                payment_method         TEXT NOT NULL,
                gateway_payment_id     TEXT,
                gateway_transaction_id TEXT,
                payment_date           TEXT,
                shipping_address       TEXT NOT NULL,
                created_at             TEXT NOT NULL DEFAULT (datetime('now')),
                updated_at             TEXT NOT NULL DEFAULT (datetime('now'))
            );

            CREATE INDEX IF NOT EXISTS idx_orders_user
                ON orders(user_id, created_at);

            CREATE INDEX IF NOT EXISTS idx_orders_gateway_payment
                ON orders(gateway_payment_id);

            CREATE TABLE IF NOT EXISTS chat_sessions (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id     TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                session_id  TEXT NOT NULL,
                created_at  TEXT NOT NULL DEFAULT (datetime('now')),
                updated_at  TEXT NOT NULL DEFAULT (datetime('now')),
                UNIQUE (user_id, session_id)
            );

            CREATE TABLE IF NOT EXISTS chat_messages (
                id              INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_session_id INTEGER NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
                user_text       TEXT NOT NULL,
                bot_text        TEXT NOT NULL,
                intent          TEXT NOT NULL,
                entities        TEXT,
                created_at      TEXT NOT NULL DEFAULT (datetime('now'))
            );

            CREATE INDEX IF NOT EXISTS idx_chat_messages_session
                ON chat_messages(chat_session_id, id);
        """)
        await db.commit()


@asynccontextmanager
async def connect(db_path: str) -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection with dict-like rows and foreign keys enforced.

    The connection runs in autocommit mode: single statements commit on their
    own, multi-statement writes go through ``transaction``.
    """
    async with aiosqlite.connect(db_path, isolation_level=None) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys = ON")
        yield db


@asynccontextmanager
async def transaction(db_path: str) -> AsyncIterator[aiosqlite.Connection]:
    """All statements issued inside commit together or not at all."""
    async with connect(db_path) as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        await db.commit()


def new_id() -> str:
    return uuid.uuid4().hex


# --- Users & tokens ---

def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PASSWORD_ITERATIONS)
    return f"pbkdf2_sha256${PASSWORD_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        _, iterations, salt, expected = encoded.split("$")
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


def _row_to_user(row) -> User:
    address = json.loads(row["shipping_address"]) if row["shipping_address"] else None
    return User(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        phone=row["phone"],
        shipping_address=ShippingAddress.model_validate(address) if address else None,
        created_at=row["created_at"],
    )


async def create_user(
    db_path: str,
    email: str,
    name: str,
    password: str,
    phone: str | None = None,
    shipping_address: ShippingAddress | None = None,
) -> User:
    """Register a user. Raises ConflictError when the email is taken."""
    user_id = new_id()
    async with connect(db_path) as db:
        try:
            await db.execute(
                "INSERT INTO users (id, email, name, phone, password_hash, shipping_address) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    user_id,
                    email.strip().lower(),
                    name.strip(),
                    phone,
                    hash_password(password),
                    shipping_address.model_dump_json(by_alias=True) if shipping_address else None,
                ),
            )
        except sqlite3.IntegrityError:
            raise ConflictError("User with this email already exists")
    user = await get_user(db_path, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


async def get_user(db_path: str, user_id: str) -> User | None:
    async with connect(db_path) as db:
        cursor = await db.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = await cursor.fetchone()
        return _row_to_user(row) if row else None


async def authenticate_credentials(db_path: str, email: str, password: str) -> User | None:
    async with connect(db_path) as db:
        cursor = await db.execute(
            "SELECT * FROM users WHERE email = ?", (email.strip().lower(),)
        )
        row = await cursor.fetchone()
    if row is None or not verify_password(password, row["password_hash"]):
        return None
    return _row_to_user(row)


async def update_profile(
    db_path: str,
    user_id: str,
    name: str,
    phone: str | None,
    shipping_address: ShippingAddress,
) -> User | None:
    async with connect(db_path) as db:
        await db.execute(
            "UPDATE users SET name = ?, phone = ?, shipping_address = ?, "
            "updated_at = datetime('now') WHERE id = ?",
            (name.strip(), phone, shipping_address.model_dump_json(by_alias=True), user_id),
        )
    return await get_user(db_path, user_id)


async def issue_token(db_path: str, user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    async with connect(db_path) as db:
        await db.execute(
            "INSERT INTO auth_tokens (token, user_id) VALUES (?, ?)",
            (token, user_id),
        )
    return token


async def get_user_by_token(db_path: str, token: str) -> User | None:
    async with connect(db_path) as db:
        cursor = await db.execute(
            "SELECT users.* FROM auth_tokens JOIN users ON users.id = auth_tokens.user_id "
            "WHERE auth_tokens.token = ?",
            (token,),
        )
        row = await cursor.fetchone()
        return _row_to_user(row) if row else None


async def revoke_token(db_path: str, token: str):
    async with connect(db_path) as db:
        await db.execute("DELETE FROM auth_tokens WHERE token = ?", (token,))


# --- Chat sessions ---

async def list_chat_sessions(
    db_path: str, user_id: str, limit: int = 20, offset: int = 0
) -> list[dict]:
    """List a user's chat sessions, most recent first."""
    async with connect(db_path) as db:
        cursor = await db.execute(
            """
            SELECT s.session_id, s.created_at, s.updated_at, COUNT(m.id) AS message_count
            FROM chat_sessions s LEFT JOIN chat_messages m ON m.chat_session_id = s.id
            WHERE s.user_id = ?
            GROUP BY s.id
            ORDER BY s.updated_at DESC, s.id DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, limit, offset),
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]


async def get_chat_session(db_path: str, user_id: str, session_id: str) -> dict | None:
    async with connect(db_path) as db:
        cursor = await db.execute(
            "SELECT * FROM chat_sessions WHERE user_id = ? AND session_id = ?",
            (user_id, session_id),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None


def _row_to_message(row) -> dict:
    return {
        "message": row["user_text"],
        "response": row["bot_text"],
        "intent": row["intent"],
        "entities": json.loads(row["entities"]) if row["entities"] else {},
        "timestamp": row["created_at"],
    }


async def get_chat_messages(db_path: str, user_id: str, session_id: str) -> list[dict]:
    """Load all messages for a session, oldest first."""
    async with connect(db_path) as db:
        cursor = await db.execute(
            """
            SELECT m.* FROM chat_messages m
            JOIN chat_sessions s ON s.id = m.chat_session_id
            WHERE s.user_id = ? AND s.session_id = ?
            ORDER BY m.id ASC
            """,
            (user_id, session_id),
        )
        rows = await cursor.fetchall()
        return [_row_to_message(row) for row in rows]


async def get_recent_messages(
    db_path: str, user_id: str, session_id: str, limit: int = 5
) -> list[dict]:
    """The last ``limit`` turns of a session, oldest first."""
    async with connect(db_path) as db:
        cursor = await db.execute(
            """
            SELECT m.* FROM chat_messages m
            JOIN chat_sessions s ON s.id = m.chat_session_id
            WHERE s.user_id = ? AND s.session_id = ?
            ORDER BY m.id DESC
            LIMIT ?
            """,
            (user_id, session_id, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_message(row) for row in reversed(rows)]


async def save_chat_message(
    db_path: str,
    user_id: str,
    session_id: str,
    user_text: str,
    bot_text: str,
    intent: str,
    entities: dict | None = None,
    max_messages: int = 50,
) -> int | None:
    """Append a turn to the session (creating it on first use) and trim to the cap."""
    async with transaction(db_path) as db:
        await db.execute(
            "INSERT INTO chat_sessions (user_id, session_id) VALUES (?, ?) "
            "ON CONFLICT (user_id, session_id) DO UPDATE SET updated_at = datetime('now')",
            (user_id, session_id),
        )
        cursor = await db.execute(
            "SELECT id FROM chat_sessions WHERE user_id = ? AND session_id = ?",
            (user_id, session_id),
        )
        chat_session_id = (await cursor.fetchone())["id"]
        cursor = await db.execute(
            "INSERT INTO chat_messages (chat_session_id, user_text, bot_text, intent, entities) "
            "VALUES (?, ?, ?, ?, ?)",
            (chat_session_id, user_text, bot_text, intent, json.dumps(entities) if entities else None),
        )
        message_id = cursor.lastrowid
        # Keep only the newest max_messages turns
        await db.execute(
            """
            DELETE FROM chat_messages
            WHERE chat_session_id = ? AND id NOT IN (
                SELECT id FROM chat_messages WHERE chat_session_id = ?
                ORDER BY id DESC LIMIT ?
            )
            """,
            (chat_session_id, chat_session_id, max_messages),
        )
    return message_id
