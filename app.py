from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, ValidationError
from typing import Any, Dict, List, Literal, Optional
from pathlib import Path
from uuid import uuid4
import asyncio
import os
import secrets
import time

import ai_client
from exports import csv_filename, print_context, quote_to_csv
from quoting import (
    DEFAULT_CONTINGENCY_PERCENT,
    DEFAULT_OVERHEAD_PERCENT,
    DEFAULT_RATE_ADJUST_PERCENT,
    DEFAULT_REGION,
    DEFAULT_ROOM_TYPE,
    DEFAULT_STYLE,
    REGION_LABELS,
    RENDER_STYLES,
    ROOM_TYPES,
    TAX_RATES,
    Quote,
    QuoteParams,
    SavedProject,
    parse_number,
    add_item,
    apply_rate_book,
    bump_all_rates,
    bump_item_rate,
    params_for,
    quote_from_model_reply,
    rate_key,
    remove_item,
    remove_rate,
    requote,
    save_rate,
    set_grand_total,
    update_item,
)
from storage import LocalStore, THEMES

# ---------------- Config ----------------
DATA_DIR = os.getenv("DATA_DIR", str(Path(__file__).resolve().parent / "data"))
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", "86400"))
APP_PASSWORD = os.getenv("APP_PASSWORD", "")
AUTH_COOKIE = "quoter_auth"

print("DEBUG[config]: DATA_DIR =", DATA_DIR)
print("DEBUG[config]: SESSION_TTL_SECONDS =", SESSION_TTL_SECONDS)
print("DEBUG[config]: APP_PASSWORD set:", bool(APP_PASSWORD))

store = LocalStore(DATA_DIR)
_store_lock = asyncio.Lock()

_sessions: Dict[str, Dict[str, Any]] = {}
_sessions_lock = asyncio.Lock()

_auth_tokens: set = set()

MISSING_INPUT_MESSAGE = "Please provide a project name, upload a photo, and describe the scope of work to generate a quote."
MISSING_SAVE_MESSAGE = "Please generate a quote and provide a project name before saving."

# ---------------- App setup ----------------
app = FastAPI(title="AI Renovation Quoter")

BASE_DIR = Path(__file__).resolve().parent
app.mount("/static", StaticFiles(directory=str(BASE_DIR / "web" / "static")), name="static")
templates = Jinja2Templates(directory=str(BASE_DIR / "web"))

# ---------------- Models ----------------
class SessionState(BaseModel):
    session_id: str
    project_name: str = ""
    room_type: str = DEFAULT_ROOM_TYPE
    region: str = DEFAULT_REGION
    scope: str = ""
    style: str = DEFAULT_STYLE
    image: Optional[str] = None
    file_name: str = ""
    file_type: str = ""
    render: Optional[str] = None
    overhead_percent: float = DEFAULT_OVERHEAD_PERCENT
    contingency_percent: float = DEFAULT_CONTINGENCY_PERCENT
    rate_adjust_percent: float = DEFAULT_RATE_ADJUST_PERCENT
    quote: Optional[Quote] = None
    current_project_id: Optional[str] = None
    error: Optional[str] = None
    render_error: Optional[str] = None

class SessionView(SessionState):
    tax_percent: float
    region_label: str
    saved_rate_flags: List[bool] = []

class FormUpdate(BaseModel):
    project_name: Optional[str] = None
    room_type: Optional[str] = None
    region: Optional[str] = None
    scope: Optional[str] = None
    style: Optional[str] = None
    overhead_percent: Optional[Any] = None
    contingency_percent: Optional[Any] = None
    rate_adjust_percent: Optional[Any] = None

class ItemUpdate(BaseModel):
    field: str
    value: Any = None

class BumpRequest(BaseModel):
    direction: Literal["up", "down"]
    percent: Optional[Any] = None

class GrandTotalRequest(BaseModel):
    target: Any = None

class LoadRequest(BaseModel):
    project_id: Optional[str] = None

class ThemeUpdate(BaseModel):
    theme: str

class ProjectSummary(BaseModel):
    id: str
    name: str

# ---------------- Helpers ----------------
def _elapsed_s(start: float) -> float:
    return round(time.perf_counter() - start, 3)

def _params(state: SessionState) -> QuoteParams:
    return params_for(state.region, state.overhead_percent, state.contingency_percent)

def _view(state: SessionState) -> SessionView:
    flags: List[bool] = []
    if state.quote:
        rates = store.get_rates()
        flags = [rate_key(it.item) in rates for it in state.quote.line_items]
    return SessionView(
        **state.model_dump(),
        tax_percent=TAX_RATES[state.region],
        region_label=REGION_LABELS[state.region],
        saved_rate_flags=flags,
    )

def _require_quote(state: SessionState) -> Quote:
    if not state.quote:
        raise HTTPException(status_code=409, detail="No quote to edit")
    return state.quote

def _check_choice(value: str, allowed, label: str) -> str:
    if value not in allowed:
        raise HTTPException(status_code=400, detail=f"Unknown {label}: {value}")
    return value

def _apply_form(state: SessionState, upd: FormUpdate) -> bool:
    """Apply non-empty fields; returns True when the pricing parameters changed."""
    before = (state.region, state.overhead_percent, state.contingency_percent)
    if upd.project_name is not None:
        state.project_name = upd.project_name
    if upd.scope is not None:
        state.scope = upd.scope
    if upd.room_type:
        state.room_type = _check_choice(upd.room_type, ROOM_TYPES, "room type")
    if upd.style:
        state.style = _check_choice(upd.style, RENDER_STYLES, "style")
    if upd.region:
        state.region = _check_choice(upd.region, TAX_RATES, "region")
    for field in ("overhead_percent", "contingency_percent", "rate_adjust_percent"):
        v = parse_number(getattr(upd, field))
        if v is not None:
            setattr(state, field, v)
    return before != (state.region, state.overhead_percent, state.contingency_percent)

async def _cleanup_old_sessions() -> None:
    now = time.time()
    async with _sessions_lock:
        stale = [sid for sid, s in _sessions.items() if now - float(s.get("updated_at", now)) > SESSION_TTL_SECONDS]
        for sid in stale:
            _sessions.pop(sid, None)
    if stale:
        print("DEBUG[_cleanup_old_sessions]: dropped", len(stale), "stale sessions")

async def _get_session(sid: str) -> SessionState:
    async with _sessions_lock:
        entry = _sessions.get(sid)
        if not entry:
            raise HTTPException(status_code=404, detail="Session not found")
        return entry["state"].model_copy(deep=True)

async def _put_session(state: SessionState) -> None:
    async with _sessions_lock:
        _sessions[state.session_id] = {"state": state, "updated_at": time.time()}

async def _merge_session(sid: str, apply) -> SessionState:
    """Apply `apply(state)` to the live session, so edits made while an AI call was running survive."""
    async with _sessions_lock:
        entry = _sessions.get(sid)
        if not entry:
            raise HTTPException(status_code=404, detail="Session not found")
        state = entry["state"].model_copy(deep=True)
        apply(state)
        _sessions[sid] = {"state": state, "updated_at": time.time()}
        return state

def _stored_image(state: SessionState):
    try:
        return ai_client.parse_data_uri(state.image)
    except ValueError as e:
        print("DEBUG[_stored_image]: unusable stored photo:", e)
        raise HTTPException(status_code=400, detail=MISSING_INPUT_MESSAGE)

async def _edit_quote(sid: str, op) -> SessionView:
    state = await _get_session(sid)
    quote = _require_quote(state)
    try:
        state.quote = op(quote, _params(state))
    except IndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await _put_session(state)
    return _view(state)

# ---------------- Auth gate ----------------
def _is_authenticated(request: Request) -> bool:
    if not APP_PASSWORD:
        return True
    return request.cookies.get(AUTH_COOKIE) in _auth_tokens

def require_auth(request: Request) -> None:
    if not _is_authenticated(request):
        raise HTTPException(status_code=401, detail="Sign in required")

@app.get("/login", response_class=HTMLResponse)
def login_page(request: Request):
    return templates.TemplateResponse(request, "login.html", {"error": None, "theme": store.get_theme()})

@app.post("/login")
def login(request: Request, password: str = Form(default="")):
    if APP_PASSWORD and secrets.compare_digest(password.encode("utf-8"), APP_PASSWORD.encode("utf-8")):
        token = secrets.token_hex(16)
        _auth_tokens.add(token)
        resp = RedirectResponse(url="/", status_code=303)
        resp.set_cookie(AUTH_COOKIE, token, httponly=True, samesite="lax")
        return resp
    if not APP_PASSWORD:
        return RedirectResponse(url="/", status_code=303)
    print("DEBUG[/login]: rejected password attempt")
    return templates.TemplateResponse(
        request,
        "login.html",
        {"error": "Incorrect password. Please try again.", "theme": store.get_theme()},
        status_code=401,
    )

# ---------------- Routes ----------------
@app.get("/", response_class=HTMLResponse)
def index(request: Request):
    if not _is_authenticated(request):
        return RedirectResponse(url="/login", status_code=303)
    return templates.TemplateResponse(request, "index.html", {"theme": store.get_theme()})

api = APIRouter(prefix="/api", dependencies=[Depends(require_auth)])

@api.get("/options")
def options():
    return {
        "regions": [
            {"code": code, "label": REGION_LABELS[code], "tax_percent": rate}
            for code, rate in TAX_RATES.items()
        ],
        "room_types": ROOM_TYPES,
        "styles": RENDER_STYLES,
        "defaults": {
            "region": DEFAULT_REGION,
            "room_type": DEFAULT_ROOM_TYPE,
            "style": DEFAULT_STYLE,
            "overhead_percent": DEFAULT_OVERHEAD_PERCENT,
            "contingency_percent": DEFAULT_CONTINGENCY_PERCENT,
            "rate_adjust_percent": DEFAULT_RATE_ADJUST_PERCENT,
        },
    }

@api.post("/sessions", response_model=SessionView)
async def create_session():
    await _cleanup_old_sessions()
    state = SessionState(session_id=uuid4().hex)
    await _put_session(state)
    return _view(state)

@api.get("/sessions/{sid}", response_model=SessionView)
async def get_session(sid: str):
    return _view(await _get_session(sid))

@api.patch("/sessions/{sid}/form", response_model=SessionView)
async def update_form(sid: str, upd: FormUpdate):
    state = await _get_session(sid)
    if _apply_form(state, upd) and state.quote:
        state.quote = requote(state.quote, _params(state))
    await _put_session(state)
    return _view(state)

@api.post("/sessions/{sid}/generate", response_model=SessionView)
async def generate(
    sid: str,
    file: Optional[UploadFile] = File(default=None),
    project_name: Optional[str] = Form(default=None),
    room_type: Optional[str] = Form(default=None),
    region: Optional[str] = Form(default=None),
    scope: Optional[str] = Form(default=None),
    style: Optional[str] = Form(default=None),
    overhead_percent: Optional[str] = Form(default=None),
    contingency_percent: Optional[str] = Form(default=None),
    include_render: bool = Form(default=True),
):
    state = await _get_session(sid)
    _apply_form(state, FormUpdate(
        project_name=project_name,
        room_type=room_type,
        region=region,
        scope=scope,
        style=style,
        overhead_percent=overhead_percent,
        contingency_percent=contingency_percent,
    ))

    print("\n=== DEBUG[/generate]: new request ===")
    image_bytes: Optional[bytes] = None
    mime = ""
    if file is not None and file.filename:
        data = await file.read()
        image_bytes, mime = await asyncio.to_thread(ai_client.prepare_image, data)
        state.image = ai_client.data_uri(image_bytes, mime)
        state.file_name = file.filename
        state.file_type = mime
        print("DEBUG[/generate]: incoming filename:", file.filename, "bytes:", len(image_bytes))

    if not state.project_name.strip() or not state.scope.strip() or not state.image:
        await _put_session(state)
        raise HTTPException(status_code=400, detail=MISSING_INPUT_MESSAGE)
    if image_bytes is None:
        image_bytes, mime = _stored_image(state)

    params = _params(state)
    region_label = REGION_LABELS[state.region]
    state.quote = None
    state.error = None
    state.render_error = None
    if include_render:
        state.render = None
    await _put_session(state)

    req_start = time.perf_counter()
    calls = [
        asyncio.to_thread(
            ai_client.request_quote,
            image_bytes,
            mime,
            state.room_type,
            region_label,
            state.scope,
            params.overhead_percent,
            params.contingency_percent,
            params.tax_percent,
        )
    ]
    if include_render:
        calls.append(asyncio.to_thread(
            ai_client.request_render,
            image_bytes,
            mime,
            state.room_type,
            region_label,
            state.scope,
            state.style,
        ))
    results = await asyncio.gather(*calls, return_exceptions=True)

    quote: Optional[Quote] = None
    error: Optional[str] = None
    quote_result = results[0]
    if isinstance(quote_result, Exception):
        print("DEBUG[/generate]: quote exception:", quote_result)
        error = f"Failed to generate quote. {quote_result}"
    else:
        try:
            quote = quote_from_model_reply(quote_result, params)
        except ValidationError as e:
            print("DEBUG[/generate]: quote schema mismatch:", e)
            error = "Failed to generate quote. The model reply did not match the quote format."

    render: Optional[str] = None
    render_error: Optional[str] = None
    if include_render:
        render_result = results[1]
        if isinstance(render_result, Exception):
            print("DEBUG[/generate]: render exception:", render_result)
            render_error = f"Failed to generate rendering. {render_result}"
        else:
            render = render_result

    def _merge(current: SessionState) -> None:
        current.error = error
        if quote is not None:
            # percentages or region may have changed while the model was answering
            current.quote = requote(quote, _params(current))
        if include_render:
            current.render = render
            current.render_error = render_error

    state = await _merge_session(sid, _merge)
    print(f"TIMING[/generate]: total={_elapsed_s(req_start):.3f}s items={len(quote.line_items) if quote else 0}")
    if state.error:
        raise HTTPException(status_code=502, detail=state.error)
    return _view(state)

@api.post("/sessions/{sid}/render", response_model=SessionView)
async def rerender(sid: str):
    state = await _get_session(sid)
    if not state.image or not state.scope.strip():
        raise HTTPException(status_code=400, detail=MISSING_INPUT_MESSAGE)
    image_bytes, mime = _stored_image(state)
    render: Optional[str] = None
    render_error: Optional[str] = None
    try:
        render = await asyncio.to_thread(
            ai_client.request_render,
            image_bytes,
            mime,
            state.room_type,
            REGION_LABELS[state.region],
            state.scope,
            state.style,
        )
    except Exception as e:
        print("DEBUG[/render]: exception:", e)
        render_error = f"Failed to generate rendering. {e}"

    def _merge(current: SessionState) -> None:
        current.render_error = render_error
        if render is not None:
            current.render = render

    state = await _merge_session(sid, _merge)
    if render_error:
        raise HTTPException(status_code=502, detail=render_error)
    return _view(state)

# ---------------- Line items ----------------
@api.post("/sessions/{sid}/items", response_model=SessionView)
async def create_item(sid: str):
    return await _edit_quote(sid, add_item)

@api.patch("/sessions/{sid}/items/{index}", response_model=SessionView)
async def edit_item(sid: str, index: int, upd: ItemUpdate):
    return await _edit_quote(sid, lambda q, p: update_item(q, index, upd.field, upd.value, p))

@api.delete("/sessions/{sid}/items/{index}", response_model=SessionView)
async def delete_item(sid: str, index: int):
    return await _edit_quote(sid, lambda q, p: remove_item(q, index, p))

@api.post("/sessions/{sid}/items/{index}/bump", response_model=SessionView)
async def bump_item(sid: str, index: int, req: BumpRequest):
    state = await _get_session(sid)
    percent = req.percent if req.percent is not None else state.rate_adjust_percent
    return await _edit_quote(sid, lambda q, p: bump_item_rate(q, index, req.direction, percent, p))

@api.post("/sessions/{sid}/bump", response_model=SessionView)
async def bump_all(sid: str, req: BumpRequest):
    state = await _get_session(sid)
    percent = req.percent if req.percent is not None else state.rate_adjust_percent
    return await _edit_quote(sid, lambda q, p: bump_all_rates(q, req.direction, percent, p))

@api.post("/sessions/{sid}/grand-total", response_model=SessionView)
async def adjust_grand_total(sid: str, req: GrandTotalRequest):
    return await _edit_quote(sid, lambda q, p: set_grand_total(q, req.target, p))

# ---------------- Rate book ----------------
@api.get("/rate-book")
def rate_book():
    return {k: v.model_dump() for k, v in store.get_rates().items()}

@api.post("/sessions/{sid}/items/{index}/rate-book", response_model=SessionView)
async def toggle_rate(sid: str, index: int):
    state = await _get_session(sid)
    quote = _require_quote(state)
    if index < 0 or index >= len(quote.line_items):
        raise HTTPException(status_code=404, detail=f"No line item at index {index}")
    item = quote.line_items[index]
    async with _store_lock:
        rates = store.get_rates()
        if rate_key(item.item) in rates:
            rates = remove_rate(rates, item)
            print("DEBUG[/rate-book]: removed rate for", rate_key(item.item))
        else:
            try:
                rates = save_rate(rates, item)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            print("DEBUG[/rate-book]: saved rate for", rate_key(item.item))
        store.set_rates(rates)
    return _view(state)

@api.post("/sessions/{sid}/rate-book/apply", response_model=SessionView)
async def apply_rates(sid: str):
    rates = store.get_rates()
    return await _edit_quote(sid, lambda q, p: apply_rate_book(q, rates, p))

# ---------------- Projects ----------------
@api.get("/projects", response_model=List[ProjectSummary])
def list_projects():
    return [ProjectSummary(id=p.id, name=p.name) for p in store.list_projects()]

@api.post("/sessions/{sid}/save", response_model=SessionView)
async def save_project(sid: str):
    state = await _get_session(sid)
    if not state.project_name.strip() or not state.quote or not state.image:
        raise HTTPException(status_code=400, detail=MISSING_SAVE_MESSAGE)

    project = SavedProject(
        id=state.current_project_id or str(int(time.time() * 1000)),
        name=state.project_name,
        file_preview=state.image,
        file_name=state.file_name,
        file_type=state.file_type,
        room_type=state.room_type,
        region=state.region,
        scope=state.scope,
        style=state.style,
        quote=state.quote,
        render_preview=state.render,
        overhead_percent=state.overhead_percent,
        contingency_percent=state.contingency_percent,
    )
    async with _store_lock:
        store.save_project(project)
    print("DEBUG[/save]: saved project", project.id, repr(project.name))
    state.current_project_id = project.id
    await _put_session(state)
    return _view(state)

@api.post("/sessions/{sid}/load", response_model=SessionView)
async def load_project(sid: str, req: LoadRequest):
    await _get_session(sid)
    if not req.project_id:
        state = SessionState(session_id=sid)
        await _put_session(state)
        return _view(state)

    project = store.get_project(req.project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    region = project.region if project.region in TAX_RATES else DEFAULT_REGION
    state = SessionState(
        session_id=sid,
        project_name=project.name,
        room_type=project.room_type,
        region=region,
        scope=project.scope,
        style=project.style,
        image=project.file_preview,
        file_name=project.file_name,
        file_type=project.file_type,
        render=project.render_preview,
        overhead_percent=project.overhead_percent,
        contingency_percent=project.contingency_percent,
        quote=project.quote,
        current_project_id=project.id,
    )
    if region != project.region and state.quote:
        print("DEBUG[/load]: unknown region", repr(project.region), "-> requoting for", region)
        state.quote = requote(state.quote, _params(state))
    await _put_session(state)
    return _view(state)

# ---------------- Exports ----------------
@api.get("/sessions/{sid}/export.csv")
async def export_csv(sid: str):
    state = await _get_session(sid)
    quote = _require_quote(state)
    body = quote_to_csv(quote, _params(state))
    filename = csv_filename(state.project_name).replace('"', "")
    return Response(
        content=body,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

@api.get("/sessions/{sid}/print", response_class=HTMLResponse)
async def print_view(request: Request, sid: str):
    state = await _get_session(sid)
    quote = _require_quote(state)
    ctx = print_context(
        state.project_name,
        quote,
        _params(state),
        REGION_LABELS[state.region],
        image=state.image,
        render=state.render,
    )
    return templates.TemplateResponse(request, "print.html", ctx)

# ---------------- Preferences ----------------
@api.get("/preferences/theme")
def get_theme():
    return {"theme": store.get_theme()}

@api.put("/preferences/theme")
async def put_theme(upd: ThemeUpdate):
    if upd.theme not in THEMES:
        raise HTTPException(status_code=400, detail=f"Unknown theme: {upd.theme}")
    async with _store_lock:
        store.set_theme(upd.theme)
    return {"theme": upd.theme}

app.include_router(api)

# Run: uvicorn app:app --reload
