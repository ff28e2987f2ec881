"""
Remote Store Simulator for matchstore

A small authenticated row store standing in for the cloud backend:
1. Issuing bearer tokens for a principal (development sign-in)
2. Reading, upserting and deleting records keyed by
   (principal, entity type, entity id)

A caller can only see rows of the principal its token was issued for.
"""

import json
import logging
import secrets
import sqlite3
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException

from matchstore.config import CloudConfig
from matchstore.errors import InvalidArgument
from matchstore.identifiers import validate_principal_id
from matchstore.models import CreateSessionRequest, RemoteRecord, SessionResponse, UpsertRecordRequest

# Set up logger
logger = logging.getLogger("matchstore.cloud")


# ---------- Database Configuration ----------

CLOUD_DB_PATH = CloudConfig.DB_PATH
SESSION_TTL = CloudConfig.SESSION_TTL


def get_db():
    """Get database connection."""
    conn = sqlite3.connect(CLOUD_DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def init_db():
    """Initialize cloud database schema."""
    logger.info("Initializing cloud database...")
    db = get_db()

    # Bearer tokens
    db.execute("""
        CREATE TABLE IF NOT EXISTS sessions (
            token TEXT PRIMARY KEY,
            principal_id TEXT NOT NULL,
            created_at INTEGER NOT NULL,
            expires_at INTEGER NOT NULL
        )
    """)

    # Records, isolated per principal
    db.execute("""
        CREATE TABLE IF NOT EXISTS records (
            principal_id TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            data TEXT,
            updated_at INTEGER NOT NULL,
            PRIMARY KEY (principal_id, entity_type, entity_id)
        )
    """)

    db.commit()
    db.close()
    logger.info("Cloud database initialized")


def _row_to_record(row) -> RemoteRecord:
    return RemoteRecord(
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        principal_id=row["principal_id"],
        data=json.loads(row["data"]) if row["data"] is not None else None,
        updated_at=row["updated_at"],
    )


# ---------- Authentication ----------

def current_principal(authorization: Optional[str] = Header(None)) -> str:
    """Resolve the bearer token to its principal, or fail with 401."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = authorization[len("Bearer "):].strip()

    db = get_db()
    row = db.execute("SELECT principal_id, expires_at FROM sessions WHERE token = ?", (token,)).fetchone()
    db.close()

    if row is None:
        raise HTTPException(status_code=401, detail="Unknown session")
    if row["expires_at"] <= int(time.time()):
        raise HTTPException(status_code=401, detail="Session expired")
    return row["principal_id"]


# ---------- App ----------

@asynccontextmanager
async def lifespan(_app: FastAPI):
    logger.info("Starting remote store simulator...")
    init_db()

    # Log available endpoints
    logger.info("Available endpoints:")
    for route in app.routes:
        methods = getattr(route, "methods", None)
        path = getattr(route, "path", None)
        if methods and path:
            methods_str = ", ".join(sorted(methods - {"HEAD", "OPTIONS"}))
            if methods_str:  # Skip if only HEAD/OPTIONS
                logger.info(f"  {methods_str:20s} {path}")

    yield
    logger.info("Remote store simulator shutting down")


app = FastAPI(
    title="matchstore Remote Store Simulator",
    description="Authenticated per-principal row store for sync testing",
    lifespan=lifespan
)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/v1/sessions", response_model=SessionResponse)
async def create_session(request: CreateSessionRequest):
    """Issue a bearer token for a principal."""
    try:
        principal_id = validate_principal_id(request.principal_id)
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=str(e))

    current_time = int(time.time())
    token = secrets.token_urlsafe(32)
    expires_at = current_time + SESSION_TTL

    db = get_db()
    db.execute(
        "INSERT INTO sessions (token, principal_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
        (token, principal_id, current_time, expires_at),
    )
    db.commit()
    db.close()

    logger.info(f"Session issued for {principal_id}")
    return SessionResponse(access_token=token, principal_id=principal_id, expires_at=expires_at)


@app.get("/v1/records/{entity_type}", response_model=list[RemoteRecord])
async def list_records(entity_type: str, principal_id: str = Depends(current_principal)):
    db = get_db()
    rows = db.execute("""
        SELECT * FROM records
        WHERE principal_id = ? AND entity_type = ?
        ORDER BY updated_at ASC
    """, (principal_id, entity_type)).fetchall()
    db.close()
    return [_row_to_record(row) for row in rows]


@app.get("/v1/records/{entity_type}/{entity_id}", response_model=RemoteRecord)
async def get_record(entity_type: str, entity_id: str, principal_id: str = Depends(current_principal)):
    db = get_db()
    row = db.execute("""
        SELECT * FROM records
        WHERE principal_id = ? AND entity_type = ? AND entity_id = ?
    """, (principal_id, entity_type, entity_id)).fetchone()
    db.close()

    if row is None:
        raise HTTPException(status_code=404, detail=f"{entity_type}/{entity_id} not found")
    return _row_to_record(row)


@app.put("/v1/records/{entity_type}/{entity_id}", response_model=RemoteRecord)
async def upsert_record(
    entity_type: str,
    entity_id: str,
    request: UpsertRecordRequest,
    principal_id: str = Depends(current_principal),
):
    """Create or replace a record of the caller's principal."""
    if request.updated_at < 0:
        raise HTTPException(status_code=422, detail="updatedAt must be a positive number")

    db = get_db()
    db.execute("""
        INSERT OR REPLACE INTO records (principal_id, entity_type, entity_id, data, updated_at)
        VALUES (?, ?, ?, ?, ?)
    """, (
        principal_id, entity_type, entity_id,
        json.dumps(request.data) if request.data is not None else None,
        request.updated_at,
    ))
    db.commit()
    db.close()

    logger.debug(f"Upserted {entity_type}/{entity_id} for {principal_id}")
    return RemoteRecord(
        entity_type=entity_type,
        entity_id=entity_id,
        principal_id=principal_id,
        data=request.data,
        updated_at=request.updated_at,
    )


@app.delete("/v1/records/{entity_type}/{entity_id}")
async def delete_record(entity_type: str, entity_id: str, principal_id: str = Depends(current_principal)):
    db = get_db()
    cursor = db.execute("""
        DELETE FROM records
        WHERE principal_id = ? AND entity_type = ? AND entity_id = ?
    """, (principal_id, entity_type, entity_id))
    db.commit()
    db.close()

    if cursor.rowcount == 0:
        raise HTTPException(status_code=404, detail=f"{entity_type}/{entity_id} not found")
    logger.debug(f"Deleted {entity_type}/{entity_id} for {principal_id}")
    return {"status": "deleted"}


def main():
    """Run the remote store simulator."""
    # Configure logging first
    from matchstore.log import init_logging
    init_logging("cloud", color="dim magenta")

    logger.info(f"Starting remote store simulator on http://{CloudConfig.HOST}:{CloudConfig.PORT}")
    uvicorn.run(app, host=CloudConfig.HOST, port=CloudConfig.PORT, log_config=None)


if __name__ == "__main__":
    main()
