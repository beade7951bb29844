import html
import json
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

from errors import LnurlProxyError
from lnurl import PaymentService, build_metadata
from logs import configure_logging, get_logger
from mcp_client import client_factory
from registry import ConnectionRegistry
from settings import Settings, get_settings

SERVICE_NAME = "LUD-16 LNURL Provider with MCP Proxy"
SERVICE_VERSION = "2.0.0"

logger = get_logger(__name__)

router = APIRouter()


def error_response(reason: str, status_code: int) -> JSONResponse:
    return JSONResponse({"status": "ERROR", "reason": reason}, status_code=status_code)


async def handle_proxy_error(request: Request, exc: LnurlProxyError) -> JSONResponse:
    logger.warning(
        "request_failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        reason=exc.reason,
        procedure=exc.procedure,
        identity=exc.identity,
        cause=str(exc.__cause__) if exc.__cause__ else None,
    )
    return error_response(exc.reason, exc.status_code)


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path)
    return error_response("Internal server error", 500)


def payments(request: Request) -> PaymentService:
    return request.app.state.payments


def base_url(request: Request) -> str:
    settings: Settings = request.app.state.settings
    if settings.public_url:
        return settings.public_url.rstrip("/")
    return f"https://{request.url.netloc}"


@router.get("/.well-known/lnurlp/{username}")
async def pay_request(username: str, request: Request) -> dict[str, Any]:
    info = await payments(request).resolve_payment_info(username)
    metadata = build_metadata(info, f"{info.identifier}@{request.url.netloc}")
    return {
        "callback": f"{base_url(request)}/lnurlp/callback/{username}",
        "maxSendable": info.max_sendable,
        "minSendable": info.min_sendable,
        "metadata": metadata,
        "tag": "payRequest",
    }


@router.get("/lnurlp/callback/{username}")
async def pay_callback(
    username: str, request: Request, amount: str | None = Query(default=None)
) -> dict[str, Any]:
    result = await payments(request).create_invoice(username, amount)
    return {
        "pr": result.pr,
        "routes": [],
        "verify": f"{base_url(request)}/lnurlp/verify/{username}/{result.payment_hash}",
    }


@router.get("/lnurlp/verify/{username}/{payment_hash}")
async def verify(username: str, payment_hash: str, request: Request) -> dict[str, Any]:
    status = await payments(request).verify_invoice(username, payment_hash)
    return {
        "status": "OK",
        "settled": status.settled,
        "preimage": status.preimage,
        "pr": status.pr,
    }


@router.get("/health", response_class=PlainTextResponse)
async def health() -> str:
    return "OK"


@router.get("/api/info")
async def service_info(request: Request) -> dict[str, Any]:
    settings: Settings = request.app.state.settings
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "specification": "LUD-16",
        "description": "Proxy server that resolves LNURL addresses using MCP servers",
        "endpoints": {
            "lnurlp": "/.well-known/lnurlp/:npub",
            "callback": "/lnurlp/callback/:npub",
            "verify": "/lnurlp/verify/:npub/:payment_hash",
            "health": "/health",
        },
        "configuration": {"relays": settings.relays},
        "usage": "Replace :npub with the server's npub to resolve LNURL addresses",
        "example": f"{base_url(request)}/.well-known/lnurlp/npub1example...",
    }


STYLES = """
:root{color-scheme:dark;--bg:#0a0b0f;--surface:#101216;--border:#1f2937;--text:#e5e7eb;--muted:#9ca3af;--accent:#60a5fa}
*{box-sizing:border-box}
body{margin:0;font-family:ui-sans-serif,system-ui,-apple-system,Segoe UI,Roboto,Ubuntu,sans-serif;line-height:1.5;background:var(--bg);color:var(--text);display:flex;flex-direction:column;align-items:center;justify-content:center;min-height:100vh}
.card{background:var(--surface);border:1px solid var(--border);border-radius:14px;padding:24px;max-width:640px;width:100%;box-shadow:0 10px 30px #00000055}
h1{margin:0 0 8px;font-size:22px;word-break:break-all}
.muted{color:var(--muted);font-size:13px}
.mono{font-family:ui-monospace,SFMono-Regular,Menlo,Monaco,Consolas,monospace;font-size:13px;word-break:break-all}
input{width:100%;padding:8px;margin-top:12px;background:#0c0f13;color:var(--text);border:1px solid var(--border);border-radius:6px}
#qrcode{margin:16px auto;display:flex;justify-content:center}
a{color:var(--accent);text-decoration:none}
""".strip()


def render_page(title: str, body: str, head: str = "") -> str:
    return (
        "<!doctype html><html lang=en><head><meta charset=utf-8>"
        '<meta name=viewport content="width=device-width, initial-scale=1">'
        f"<title>{html.escape(title)}</title>"
        f"<style>{STYLES}</style>{head}"
        f"</head><body><div class=card>{body}</div></body></html>"
    )


def render_index(host: str) -> str:
    body = (
        "<h1>Lightning addresses for ContextVM servers</h1>"
        "<p class=muted>Any MCP server on Nostr that exposes <span class=mono>get_info</span> "
        "and <span class=mono>make_invoice</span> can be paid at "
        f"<span class=mono>&lt;npub&gt;@{html.escape(host)}</span>.</p>"
        "<input id=npub placeholder=npub1... autocomplete=off>"
        "<p><a class=mono id=address></a></p>"
        "<script>"
        "document.getElementById('npub').addEventListener('input',e=>{"
        "const v=e.target.value.trim(),a=document.getElementById('address');"
        "a.textContent=v?v+'@'+location.host:'';"
        "a.href=v?'/w/'+encodeURIComponent(v):'#';});"
        "</script>"
    )
    return render_page("LNURL MCP Proxy", body)


def render_wallet_page(address: str) -> str:
    escaped = html.escape(address)
    qr_text = json.dumps(address).replace("<", "\\u003c")
    head = (
        '<script src="https://cdnjs.cloudflare.com/ajax/libs/qrcodejs/1.0.0/qrcode.min.js"></script>'
    )
    body = (
        f"<h1>{escaped}</h1>"
        "<div id=qrcode></div>"
        "<div class='mono muted'>Scan this qr code with your wallet</div>"
        "<script>"
        "new QRCode(document.getElementById('qrcode'),"
        f"{{text:{qr_text},width:200,height:200,"
        "colorDark:'#000000',colorLight:'#ffffff',correctLevel:QRCode.CorrectLevel.M});"
        "</script>"
    )
    return render_page("Wallet Address", body, head)


@router.get("/", response_class=HTMLResponse)
async def index(request: Request) -> str:
    return render_index(request.url.netloc)


@router.get("/w/{walletpubkey}", response_class=HTMLResponse)
async def wallet_page(walletpubkey: str, request: Request) -> str:
    return render_wallet_page(f"{walletpubkey}@{request.url.netloc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    if app.state.payments is None:
        registry = ConnectionRegistry(client_factory(settings))
        app.state.payments = PaymentService(
            registry, enforce_sendable_range=settings.enforce_sendable_range
        )
    logger.info("service_started", relays=settings.relays)
    try:
        yield
    finally:
        failures = await app.state.payments.shutdown()
        logger.info("service_stopped", close_failures=len(failures))


def create_app(
    settings: Settings | None = None, payments: PaymentService | None = None
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.payments = payments
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.add_exception_handler(LnurlProxyError, handle_proxy_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    app.include_router(router)
    return app


configure_logging(get_settings().log_level, get_settings().log_json)
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("main:app", host=settings.host, port=settings.port, reload=False)
