# fieldsync/main.py
import threading
from dataclasses import dataclass, field
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .cache import LocalCache
from .config import Config, setup_logging
from .database import make_engine, make_session_factory
from .fingerprint import Matcher
from .ingest import ChunkedDispatcher, HierarchyIngestor
from .mapping import AttributeMapper
from .remote import RemoteStore
from .routers import datasets, session, uploads
from .sync import SessionContext, SyncReconciler
from .upload import UploadPipeline


@dataclass
class Services:
    config: Config
    context: SessionContext
    cache: LocalCache
    remote: object
    reconciler: SyncReconciler
    mapper: AttributeMapper
    pipeline: UploadPipeline
    lock: threading.Lock = field(default_factory=threading.Lock)


def build_services(config: Config, remote=None, session_factory=None) -> Services:
    if session_factory is None:
        session_factory = make_session_factory(make_engine(config.get("database.url")))
    if remote is None:
        remote = RemoteStore(
            config.get("remote.base_url"),
            api_key=config.get("remote.api_key", ""),
            timeout=config.get("remote.timeout", 60),
        )

    context = SessionContext()
    cache = LocalCache(session_factory)
    dispatcher = ChunkedDispatcher(
        chunk_size=config.get("ingest.chunk_size"),
        min_chunk_size=config.get("ingest.min_chunk_size"),
    )
    ingestor = HierarchyIngestor(remote, dispatcher, replace_missing=config.get("ingest.replace_missing", True))
    reconciler = SyncReconciler(context, cache, remote, ingestor)
    matcher = Matcher(
        context.fingerprints,
        min_overlap=config.get("matching.min_overlap"),
        min_score=config.get("matching.min_score"),
    )
    mapper = AttributeMapper(
        context, cache,
        sample_limit=config.get("mapping.sample_limit"),
        example_limit=config.get("mapping.example_limit"),
    )
    pipeline = UploadPipeline(context, reconciler, matcher, mapper, ingestor, cache)
    return Services(config=config, context=context, cache=cache, remote=remote,
                    reconciler=reconciler, mapper=mapper, pipeline=pipeline)


def create_app(config: Optional[Config] = None, remote=None, session_factory=None) -> FastAPI:
    config = config or Config()
    setup_logging(config)

    app = FastAPI(title="FieldSync dataset ingestion")
    app.state.services = build_services(config, remote=remote, session_factory=session_factory)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def root():
        return {"status": "Backend is running!"}

    app.include_router(session.router)
    app.include_router(datasets.router)
    app.include_router(uploads.router)
    return app


app = create_app()
