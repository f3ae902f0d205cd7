"""
FastAPI application for Contract Hub.

The API is thin plumbing over the core modules: every request resolves a
RequestContext from the X-Organization-Id / X-User-Id headers (401 when
missing, 403 when the user is not a member), then calls the Lifecycle Store,
the Pipeline Orchestrator or the derived views. WebSocket endpoints push a
fresh list, detail or KPI view every time the underlying rows change.

Run with:
    uvicorn contract_hub.main:app --reload
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import logging

from fastapi import (
    Depends,
    FastAPI,
    File,
    Header,
    HTTPException,
    Query,
    Request,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
import httpx

from contract_hub.config import Settings, get_settings
from contract_hub.crud import DuplicateMemberError, LifecycleStore, RequestContext
from contract_hub.database import build_engine, build_session_factory, create_tables
from contract_hub.errors import (
    AuthError,
    ContractHubError,
    ContractNotFoundError,
    InvalidTransitionError,
    ParseError,
    PersistenceError,
    StorageError,
)
from contract_hub.schemas import (
    CompanyCreate,
    CompanyResponse,
    ContractCreate,
    ContractDetailResponse,
    ContractListResponse,
    ContractResponse,
    LegalKPIResponse,
    LegalNoteCreate,
    LegalNoteResponse,
    LifecycleStageCreate,
    LifecycleStageResponse,
    ManagementKPIResponse,
    MemberCreate,
    MemberResponse,
    PerformanceCreate,
    PerformanceResponse,
    PipelineOutcomeResponse,
    StatusUpdateRequest,
)
from contract_hub.services.analysis_client import AnalysisClient
from contract_hub.services.document_store import DocumentStore, DocumentUpload, LocalDocumentStore
from contract_hub.services.live_sync import LiveViewSynchronizer
from contract_hub.services.pipeline import PipelineOrchestrator
from contract_hub.services.views import ContractViews
from contract_hub.status import Role

# Logging setup
logger = logging.getLogger(__name__)

# StorageError.reason -> HTTP status
STORAGE_ERROR_STATUS = {
    "content_type": 415,
    "too_large": 413,
    "empty": 422,
    "exists": status.HTTP_409_CONFLICT,
}

# WebSocket close codes for rejected connections
WS_UNAUTHORIZED = 4401
WS_FORBIDDEN = 4403
WS_NOT_FOUND = 4404


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# --------------------------
# Error handlers
# --------------------------


def _error(status_code: int, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), **extra})


def register_exception_handlers(app: FastAPI) -> None:
    """Map the core error taxonomy onto HTTP responses."""

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        code = status.HTTP_403_FORBIDDEN if exc.forbidden else status.HTTP_401_UNAUTHORIZED
        return _error(code, exc)

    @app.exception_handler(ContractNotFoundError)
    async def not_found_handler(request: Request, exc: ContractNotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
        return _error(status.HTTP_409_CONFLICT, exc, current=exc.current, requested=exc.requested)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        code = STORAGE_ERROR_STATUS.get(exc.reason, status.HTTP_502_BAD_GATEWAY)
        return _error(code, exc, reason=exc.reason)

    @app.exception_handler(ParseError)
    async def parse_error_handler(request: Request, exc: ParseError):
        return _error(422, exc)

    @app.exception_handler(DuplicateMemberError)
    async def duplicate_member_handler(request: Request, exc: DuplicateMemberError):
        return _error(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        logger.error(f"Persistence failure on {request.url.path}: {exc}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, exc)

    @app.exception_handler(ContractHubError)
    async def contract_hub_error_handler(request: Request, exc: ContractHubError):
        logger.error(f"Unhandled {type(exc).__name__} on {request.url.path}: {exc}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, exc)


# --------------------------
# Dependencies
# --------------------------


def get_store(request: Request) -> LifecycleStore:
    return request.app.state.store


def get_views(request: Request) -> ContractViews:
    return request.app.state.views


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


async def get_context(
    request: Request,
    organization_id: Optional[str] = Header(None, alias="X-Organization-Id"),
    user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> RequestContext:
    """Resolve the caller's context from headers; AuthError maps to 401/403."""
    return await request.app.state.store.authorize(organization_id, user_id)


async def _websocket_context(websocket: WebSocket) -> Optional[RequestContext]:
    """
    Resolve the context for a WebSocket from headers or query parameters.

    Browsers cannot set headers on WebSocket requests, so organization_id and
    user_id query parameters are accepted as well. Rejected connections are
    closed and None is returned.
    """
    organization_id = websocket.headers.get("x-organization-id") or websocket.query_params.get("organization_id")
    user_id = websocket.headers.get("x-user-id") or websocket.query_params.get("user_id")
    try:
        return await websocket.app.state.store.authorize(organization_id, user_id)
    except AuthError as e:
        logger.warning(f"Rejected WebSocket connection: {e}")
        await websocket.close(code=WS_FORBIDDEN if e.forbidden else WS_UNAUTHORIZED)
        return None


# --------------------------
# Application factory
# --------------------------


def create_app(
    settings: Optional[Settings] = None,
    analysis_transport: Optional[httpx.AsyncBaseTransport] = None,
    document_store: Optional[DocumentStore] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use (defaults to get_settings())
        analysis_transport: httpx transport for the analysis client (tests pass a MockTransport)
        document_store: Document store backend (defaults to LocalDocumentStore from settings)

    Returns:
        FastAPI: Configured application; services are created in its lifespan
    """
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = build_engine(settings.database_url)
        await create_tables(engine)

        store = LifecycleStore(build_session_factory(engine))
        analysis = AnalysisClient(
            settings.analysis_base_url,
            settings.analysis_timeout_seconds,
            transport=analysis_transport,
        )
        orchestrator = PipelineOrchestrator(
            store,
            document_store or LocalDocumentStore.from_settings(),
            analysis,
        )

        app.state.store = store
        app.state.views = ContractViews(store)
        app.state.orchestrator = orchestrator
        app.state.live_sync = LiveViewSynchronizer(store)
        logger.info(f"{settings.app_name} {settings.app_version} started ({settings.environment})")

        try:
            yield
        finally:
            await app.state.live_sync.close_all()
            await orchestrator.wait_pending()
            await analysis.close()
            await engine.dispose()
            logger.info(f"{settings.app_name} stopped")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Contract lifecycle tracking with AI entity extraction and risk classification.",
        lifespan=lifespan,
    )
    register_exception_handlers(app)
    register_routes(app, settings)
    return app


# --------------------------
# API Endpoints
# --------------------------


def register_routes(app: FastAPI, settings: Settings) -> None:

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint to verify the service is running.
        Returns status and service information.
        """
        return {
            "status": "healthy",
            "service": settings.app_name,
            "version": settings.app_version,
        }

    @app.post("/companies", response_model=CompanyResponse, status_code=status.HTTP_201_CREATED)
    async def create_company(req: CompanyCreate, store: LifecycleStore = Depends(get_store)):
        """Register an organization. Its first member is added without authentication."""
        company = await store.create_company(req.name)
        return CompanyResponse.model_validate(company)

    @app.post(
        "/companies/{company_id}/members",
        response_model=MemberResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def add_member(
        company_id: str,
        req: MemberCreate,
        organization_id: Optional[str] = Header(None, alias="X-Organization-Id"),
        user_id: Optional[str] = Header(None, alias="X-User-Id"),
        store: LifecycleStore = Depends(get_store),
    ):
        """
        Add a user to a company.

        The first member of a company bootstraps it; after that only
        management members of the same company may add users.

        Raises:
            HTTPException: 404 if the company does not exist
        """
        if await store.get_company(company_id) is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Company {company_id} not found",
            )

        if await store.count_company_users(company_id) > 0:
            if organization_id != company_id:
                raise AuthError("Members can only be added by the company's own users", forbidden=bool(organization_id))
            ctx = await store.authorize(organization_id, user_id)
            if ctx.role is not Role.MANAGEMENT:
                raise AuthError("Only management may add members", forbidden=True)

        member = await store.add_company_user(company_id, req.user_id, req.role, email=req.email)
        return MemberResponse.model_validate(member)

    @app.post("/contracts", response_model=ContractResponse, status_code=status.HTTP_201_CREATED)
    async def create_contract(
        req: ContractCreate,
        ctx: RequestContext = Depends(get_context),
        store: LifecycleStore = Depends(get_store),
    ):
        contract = await store.create_contract(
            ctx,
            name=req.name,
            first_party=req.first_party,
            second_party=req.second_party,
            value_rp=req.value_rp,
            duration_months=req.duration_months,
            start_date=req.start_date,
            end_date=req.end_date,
        )
        return ContractResponse.model_validate(contract)

    @app.get("/contracts", response_model=ContractListResponse)
    async def list_contracts(
        status_filter: Optional[str] = Query(None, alias="status"),
        risk: Optional[str] = None,
        search: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: Optional[int] = Query(None, ge=1, le=500),
        offset: int = Query(0, ge=0),
        ctx: RequestContext = Depends(get_context),
        views: ContractViews = Depends(get_views),
    ):
        """List contracts, newest first. Contracts past their end date are expired first."""
        return await views.contract_list(
            ctx,
            status=status_filter,
            risk=risk,
            search=search,
            created_from=created_from,
            created_to=created_to,
            limit=limit,
            offset=offset,
        )

    @app.get("/contracts/{contract_id}", response_model=ContractDetailResponse)
    async def get_contract(
        contract_id: str,
        ctx: RequestContext = Depends(get_context),
        views: ContractViews = Depends(get_views),
    ):
        return await views.contract_detail(ctx, contract_id)

    @app.patch("/contracts/{contract_id}/status", response_model=ContractResponse)
    async def update_status(
        contract_id: str,
        req: StatusUpdateRequest,
        ctx: RequestContext = Depends(get_context),
        store: LifecycleStore = Depends(get_store),
    ):
        """
        Move a contract to a new status.

        Returns 409 for transitions outside the status table and 403 when the
        caller's role may not request the target status.
        """
        contract = await store.transition_status(ctx, contract_id, req.status, notes=req.notes)
        return ContractResponse.model_validate(contract)

    @app.post("/contracts/{contract_id}/document", response_model=PipelineOutcomeResponse)
    async def upload_document(
        contract_id: str,
        file: UploadFile = File(...),
        ctx: RequestContext = Depends(get_context),
        orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    ):
        """
        Upload a contract document and run the analysis pipeline.

        Returns the pipeline outcome: done, partially_failed (one analysis
        branch failed, the other was saved) or failed. A rejected or failed
        upload is returned as an error status instead (413/415/409/502).
        """
        data = await file.read()
        upload = DocumentUpload(
            filename=file.filename or "document",
            content_type=file.content_type or "application/octet-stream",
            data=data,
        )
        outcome = await orchestrator.run(ctx, contract_id, upload)
        if isinstance(outcome.error, StorageError):
            raise outcome.error
        return outcome.to_response()

    @app.post(
        "/contracts/{contract_id}/notes",
        response_model=LegalNoteResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def add_note(
        contract_id: str,
        req: LegalNoteCreate,
        ctx: RequestContext = Depends(get_context),
        store: LifecycleStore = Depends(get_store),
    ):
        note = await store.add_legal_note(ctx, contract_id, req.note, author=req.author)
        return LegalNoteResponse.model_validate(note)

    @app.post(
        "/contracts/{contract_id}/lifecycle",
        response_model=LifecycleStageResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def start_stage(
        contract_id: str,
        req: LifecycleStageCreate,
        ctx: RequestContext = Depends(get_context),
        store: LifecycleStore = Depends(get_store),
    ):
        stage = await store.start_lifecycle_stage(ctx, contract_id, req.stage, notes=req.notes)
        return LifecycleStageResponse.model_validate(stage)

    @app.post(
        "/contracts/{contract_id}/performance",
        response_model=PerformanceResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def record_performance(
        contract_id: str,
        req: PerformanceCreate,
        ctx: RequestContext = Depends(get_context),
        store: LifecycleStore = Depends(get_store),
    ):
        metric = await store.record_performance_metric(
            ctx,
            contract_id,
            metric_type=req.metric_type,
            value=req.value,
            division_average=req.division_average,
        )
        return PerformanceResponse.model_validate(metric)

    @app.get("/kpi/legal", response_model=LegalKPIResponse)
    async def legal_kpi(
        ctx: RequestContext = Depends(get_context),
        views: ContractViews = Depends(get_views),
    ):
        return await views.legal_kpi(ctx)

    @app.get("/kpi/management", response_model=ManagementKPIResponse)
    async def management_kpi(
        ctx: RequestContext = Depends(get_context),
        views: ContractViews = Depends(get_views),
    ):
        return await views.management_kpi(ctx)

    # --------------------------
    # Live views
    # --------------------------

    @app.websocket("/ws/contracts")
    async def contract_list_socket(websocket: WebSocket):
        """Push the contract list now and after every contract change."""
        ctx = await _websocket_context(websocket)
        if ctx is None:
            return
        await websocket.accept()

        views: ContractViews = websocket.app.state.views

        async def push(view):
            await websocket.send_json(view.model_dump(mode="json"))

        view = websocket.app.state.live_sync.open_list_view(ctx, lambda: views.contract_list(ctx), push)
        await _serve_live_view(websocket, view)

    @app.websocket("/ws/contracts/{contract_id}")
    async def contract_detail_socket(websocket: WebSocket, contract_id: str):
        """Push the contract detail bundle now and after every change to the contract."""
        ctx = await _websocket_context(websocket)
        if ctx is None:
            return

        views: ContractViews = websocket.app.state.views
        try:
            await views.store.get_contract(ctx, contract_id)
        except ContractNotFoundError as e:
            logger.warning(f"Rejected detail WebSocket: {e}")
            await websocket.close(code=WS_NOT_FOUND)
            return
        await websocket.accept()

        async def push(view):
            await websocket.send_json(view.model_dump(mode="json"))

        view = websocket.app.state.live_sync.open_detail_view(
            ctx, contract_id, lambda: views.contract_detail(ctx, contract_id), push
        )
        await _serve_live_view(websocket, view)

    @app.websocket("/ws/kpi/legal")
    async def legal_kpi_socket(websocket: WebSocket):
        """Push the legal KPIs now and after every contract or extraction change."""
        ctx = await _websocket_context(websocket)
        if ctx is None:
            return
        await websocket.accept()

        views: ContractViews = websocket.app.state.views

        async def push(view):
            await websocket.send_json(view.model_dump(mode="json"))

        view = websocket.app.state.live_sync.open_legal_kpi_view(ctx, lambda: views.legal_kpi(ctx), push)
        await _serve_live_view(websocket, view)

    @app.websocket("/ws/kpi/management")
    async def management_kpi_socket(websocket: WebSocket):
        """Push the management KPIs now and after every contract change."""
        ctx = await _websocket_context(websocket)
        if ctx is None:
            return
        await websocket.accept()

        views: ContractViews = websocket.app.state.views

        async def push(view):
            await websocket.send_json(view.model_dump(mode="json"))

        view = websocket.app.state.live_sync.open_management_kpi_view(ctx, lambda: views.management_kpi(ctx), push)
        await _serve_live_view(websocket, view)


async def _serve_live_view(websocket: WebSocket, view) -> None:
    """Keep the socket open until the client leaves; any client message forces a refresh."""
    try:
        while True:
            await websocket.receive_text()
            view.invalidate()
    except WebSocketDisconnect:
        logger.debug(f"Client left {view.name}")
    finally:
        await view.close()


app = create_app()
