"""
Evermark Portal - FastAPI creation and minting service

Turns a content reference (URL, DOI, ISBN, social post, book record) plus an
image into a minted Evermark on Base: image and metadata on GCS with IPFS
replication, the token on-chain, and a queryable record in Firestore.
"""

import os
import logging
from contextlib import asynccontextmanager
from types import SimpleNamespace

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from google.cloud import firestore

from asset_store import AssetStore, GcsObjectStore
from chain_client import JsonRpcClient, LocalAccountSigner, WalletRpcSigner
from chain_minter import ChainMinter, is_address
from duplicate_guard import DuplicateGuard
from evermark_contract import EvermarkContract
from image_fetcher import ImageFetcher
from index_store import FirestoreIndexStore
from ipfs_client import PinataClient
from orchestrator import CreationOrchestrator
from persistence_sync import PersistenceSync
from season_oracle import SeasonOracle
from routes.evermarks import router as evermarks_router
from routes.seasons import router as seasons_router

logger = logging.getLogger("evermark-portal")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

GCP_PROJECT = os.environ.get("GCP_PROJECT", "evermarks-prod")
FIRESTORE_DATABASE = os.environ.get("FIRESTORE_DATABASE", "(default)")
IMAGE_BUCKET = os.environ.get("IMAGE_BUCKET", "evermark-images")
PINATA_JWT = os.environ.get("PINATA_JWT", "")

CHAIN_RPC_URL = os.environ.get("CHAIN_RPC_URL", "https://mainnet.base.org")
CHAIN_ID = int(os.environ.get("CHAIN_ID", "8453"))  # Base mainnet
EVERMARK_CONTRACT_ADDRESS = os.environ.get("EVERMARK_CONTRACT_ADDRESS", "")
MINTER_PRIVATE_KEY = os.environ.get("MINTER_PRIVATE_KEY", "")
WALLET_RPC_URL = os.environ.get("WALLET_RPC_URL", "")
WALLET_ADDRESS = os.environ.get("WALLET_ADDRESS", "")
RECEIPT_TIMEOUT_SECONDS = float(os.environ.get("RECEIPT_TIMEOUT_SECONDS", "120"))
IPFS_REPLICATION_TIMEOUT = float(os.environ.get("IPFS_REPLICATION_TIMEOUT", "10"))

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "ALLOWED_ORIGINS",
        "https://evermarks.net,http://localhost:3000,http://localhost:5173,http://localhost:8888",
    ).split(",")
    if origin.strip()
]

# ---------------------------------------------------------------------------
# Shared services (initialised at startup)
# ---------------------------------------------------------------------------

services: SimpleNamespace | None = None


def build_signer(rpc: JsonRpcClient):
    """Server-held minting key first, then a remote wallet; None when neither is set."""
    if MINTER_PRIVATE_KEY:
        try:
            return LocalAccountSigner(MINTER_PRIVATE_KEY, rpc, CHAIN_ID)
        except Exception as e:
            logger.error("MINTER_PRIVATE_KEY is not a valid key: %s, minting disabled", type(e).__name__)
            return None
    if WALLET_RPC_URL and WALLET_ADDRESS:
        return WalletRpcSigner(WALLET_ADDRESS, JsonRpcClient(WALLET_RPC_URL))
    logger.warning("No minting signer configured, minting disabled")
    return None


def create_services() -> SimpleNamespace:
    db = firestore.AsyncClient(project=GCP_PROJECT, database=FIRESTORE_DATABASE)
    index = FirestoreIndexStore(db)

    rpc = JsonRpcClient(CHAIN_RPC_URL)
    contract = None
    if is_address(EVERMARK_CONTRACT_ADDRESS):
        contract = EvermarkContract(rpc, EVERMARK_CONTRACT_ADDRESS)
    else:
        logger.warning("EVERMARK_CONTRACT_ADDRESS missing or malformed, minting disabled")
    minter = ChainMinter(contract, build_signer(rpc), receipt_timeout=RECEIPT_TIMEOUT_SECONDS)

    pinata = PinataClient(PINATA_JWT)
    if not pinata.enabled:
        logger.warning("PINATA_JWT not set, IPFS replication disabled")
    assets = AssetStore(GcsObjectStore(IMAGE_BUCKET), pinata, secondary_timeout=IPFS_REPLICATION_TIMEOUT)

    guard = DuplicateGuard(index)
    seasons = SeasonOracle(index)
    persistence = PersistenceSync(index)
    return SimpleNamespace(
        db=db,
        index=index,
        minter=minter,
        assets=assets,
        duplicate_guard=guard,
        season_oracle=seasons,
        persistence=persistence,
        image_fetcher=ImageFetcher(),
        orchestrator=CreationOrchestrator(guard, assets, minter, persistence, seasons),
    )


def get_services() -> SimpleNamespace:
    if services is None:
        raise RuntimeError("Services not initialised. Server may still be starting.")
    return services


# ---------------------------------------------------------------------------
# Application lifecycle
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    global services
    logger.info("Initialising services for project=%s bucket=%s", GCP_PROJECT, IMAGE_BUCKET)
    services = create_services()
    logger.info(
        "Evermark Portal ready. chain_id=%d chain_configured=%s ipfs=%s",
        CHAIN_ID, services.minter.is_configured, services.assets.replication_enabled,
    )

    yield

    logger.info("Shutting down Evermark Portal")
    await services.persistence.drain()
    await services.image_fetcher.close()
    if services.db:
        services.db.close()


app = FastAPI(
    title="Evermark Portal",
    description=(
        "Preserve content references as Evermarks: dual-backend asset storage "
        "(GCS + IPFS), on-chain minting on Base, and a Firestore index."
    ),
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_config(request: Request, call_next):
    """Inject shared services into request state for route handlers."""
    svc = get_services()
    request.state.orchestrator = svc.orchestrator
    request.state.duplicate_guard = svc.duplicate_guard
    request.state.minter = svc.minter
    request.state.season_oracle = svc.season_oracle
    request.state.image_fetcher = svc.image_fetcher
    response: Response = await call_next(request)
    return response


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

app.include_router(evermarks_router)
app.include_router(seasons_router)


@app.get("/health", tags=["health"])
async def health():
    """Service health check."""
    svc = get_services()
    return {
        "status": "ok",
        "service": "evermark-portal",
        "version": VERSION,
        "project": GCP_PROJECT,
        "bucket": IMAGE_BUCKET,
        "chain_id": CHAIN_ID,
        "chain_configured": svc.minter.is_configured,
        "ipfs_replication": svc.assets.replication_enabled,
    }
