from __future__ import annotations

import logging
import os
import secrets
from pathlib import Path
from typing import Callable

from fastapi import FastAPI, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware

from qwebif.core import Config, DeviceConfig, config_path, load_config
from qwebif.csrf import csrf_field, validate
from qwebif.errors import AuthorizationError, CsrfMismatchError, RestoreInProgressError
from qwebif.privilege import PrivilegeLevel, has_privilege, privilege_for_user, resolve_privilege
from qwebif.restore import (
    RestoreAction,
    RestoreGuard,
    RestoreRequest,
    RestoreRunner,
    dispatch,
    invoke,
    on_success,
)
from qwebif.session import (
    SessionRegistry,
    end_session,
    pop_pending_operation,
    session_id,
    session_user,
    start_session,
)
from qwebif.system import CommandResult, device_mode, restore_default_config, system_reboot


logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "web_templates"
STATIC_DIR = Path(__file__).parent / "web_static"
PAM_SERVICE_ENV = "QWEBIF_WEB_PAM_SERVICE"
PAM_SERVICE_PATH = Path("/etc/pam.d/qwebif-web")
ALLOW_NON_ROOT_ENV = "QWEBIF_ALLOW_NON_ROOT"
RESTORE_PATH = "/tools_restore"
PUBLIC_PATHS = {"/login", "/logout"}

Authenticator = Callable[[str, str], bool]
RebootRunner = Callable[[DeviceConfig], CommandResult]


def _pam_service(config: Config) -> str:
    configured = os.getenv(PAM_SERVICE_ENV) or config.web.pam_service
    if configured:
        return configured
    return "qwebif-web" if PAM_SERVICE_PATH.exists() else "login"


def _pam_authenticator(service: str) -> Authenticator:
    def _authenticate(username: str, password: str) -> bool:
        import pam

        pam_session = pam.pam()
        ok = pam_session.authenticate(username, password, service=service)
        if not ok:
            logger.warning("PAM auth failed (service=%s, code=%s, reason=%s)", service, pam_session.code, pam_session.reason)
        return ok

    return _authenticate


def _load_secret(path: Path) -> str:
    if path.exists():
        return path.read_text(encoding="utf-8").strip()
    secret = secrets.token_urlsafe(32)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(secret, encoding="utf-8")
        path.chmod(0o600)
    except OSError:
        logger.warning("Could not persist session secret to %s; sessions end on restart", path)
    return secret


def create_app(
    config: Config | None = None,
    authenticate: Authenticator | None = None,
    runner: RestoreRunner = restore_default_config,
    reboot: RebootRunner = system_reboot,
) -> FastAPI:
    config = config or load_config(config_path())
    authenticate = authenticate or _pam_authenticator(_pam_service(config))
    required = PrivilegeLevel.parse(config.web.restore_privilege)
    if required is PrivilegeLevel.NONE:
        required = PrivilegeLevel.ADMIN
    allow_non_root = config.web.allow_non_root or os.getenv(ALLOW_NON_ROOT_ENV) == "1"
    login_path = config.web.login_path
    guard = RestoreGuard()
    registry = SessionRegistry(max_age=config.web.session_max_age)

    app = FastAPI(title="qwebif")
    app.state.config = config
    app.state.restore_guard = guard
    app.state.sessions = registry

    @app.middleware("http")
    async def _auth_middleware(request: Request, call_next):
        if not allow_non_root and os.geteuid() != 0:
            return HTMLResponse(
                "qwebif must run as root. Start with sudo or set QWEBIF_ALLOW_NON_ROOT=1 for dev.",
                status_code=503,
            )
        if request.url.path.startswith("/static"):
            return await call_next(request)
        if request.url.path in PUBLIC_PATHS or request.url.path == login_path:
            return await call_next(request)
        if not session_user(request.session):
            return RedirectResponse(login_path, status_code=303)
        if not registry.is_live(session_id(request.session)):
            logger.warning("Rejected %s %s: session for %s ended or expired", request.method, request.url.path, session_user(request.session))
            request.session.clear()
            return RedirectResponse(login_path, status_code=303)
        return await call_next(request)

    app.add_middleware(
        SessionMiddleware,
        secret_key=_load_secret(config.web.secret_path),
        max_age=config.web.session_max_age,
    )
    app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")
    templates = Jinja2Templates(directory=TEMPLATE_DIR)

    @app.exception_handler(AuthorizationError)
    async def _authorization_error(request: Request, exc: AuthorizationError):
        logger.warning("Denied %s %s for %s: %s", request.method, request.url.path, session_user(request.session), exc)
        return RedirectResponse(login_path, status_code=303)

    @app.exception_handler(CsrfMismatchError)
    async def _csrf_error(request: Request, exc: CsrfMismatchError):
        logger.warning("Rejected %s %s for %s: %s", request.method, request.url.path, session_user(request.session), exc)
        return RedirectResponse(login_path, status_code=303)

    @app.exception_handler(RestoreInProgressError)
    async def _restore_busy(request: Request, exc: RestoreInProgressError):
        return templates.TemplateResponse(
            request,
            "restore_busy.html",
            {"user": session_user(request.session)},
            status_code=409,
        )

    def _require_privilege(request: Request) -> None:
        if not has_privilege(request.session, required):
            raise AuthorizationError(required.label, resolve_privilege(request.session).label)

    def _invoke_guarded(action: RestoreAction, owner: str | None):
        with guard.hold(owner):
            return invoke(action, config.restore, runner)

    def _render_restore(request: Request):
        mode = device_mode(config.device)
        return templates.TemplateResponse(
            request,
            "tools_restore.html",
            {
                "user": session_user(request.session),
                "mode": mode,
                "csrf_field": csrf_field(request.session),
            },
        )

    @app.get(login_path, response_class=HTMLResponse)
    def login_form(request: Request):
        return templates.TemplateResponse(request, "login.html", {"error": None})

    @app.post(login_path)
    def login_submit(request: Request, username: str = Form(...), password: str = Form(...)):
        if authenticate(username, password):
            privilege = privilege_for_user(username, config.web.admins)
            start_session(request.session, registry, username, privilege)
            logger.info("Login for %s (%s)", username, privilege.label)
            return RedirectResponse("/", status_code=303)
        return templates.TemplateResponse(
            request,
            "login.html",
            {"error": "Invalid credentials."},
            status_code=401,
        )

    @app.get("/logout")
    def logout(request: Request):
        end_session(request.session, registry)
        return RedirectResponse(login_path, status_code=303)

    @app.get("/")
    def index(request: Request):
        return RedirectResponse(RESTORE_PATH, status_code=303)

    @app.get(RESTORE_PATH, response_class=HTMLResponse)
    def restore_form(request: Request):
        _require_privilege(request)
        return _render_restore(request)

    @app.post(RESTORE_PATH)
    async def restore_submit(request: Request):
        _require_privilege(request)
        form = await request.form()
        restore_request = RestoreRequest.from_form(form)
        if not validate(request.session, restore_request.csrf_token):
            raise CsrfMismatchError("anti-forgery token missing or invalid")
        action = dispatch(restore_request)
        if action is RestoreAction.NONE:
            return await run_in_threadpool(_render_restore, request)
        result = await run_in_threadpool(_invoke_guarded, action, session_id(request.session))
        if not result.ok:
            return templates.TemplateResponse(
                request,
                "restore_failed.html",
                {"user": session_user(request.session), "error": result.error},
                status_code=502,
            )
        target = on_success(request.session, registry, action, config.web.confirmation_path)
        return RedirectResponse(target, status_code=303)

    @app.get(config.web.confirmation_path, response_class=HTMLResponse)
    async def system_rebooted(request: Request):
        pending = pop_pending_operation(request.session, registry)
        if pending is None:
            return RedirectResponse(RESTORE_PATH, status_code=303)
        logger.info("Rebooting after %s requested at %s", pending.kind, pending.requested_at.isoformat())
        result = await run_in_threadpool(reboot, config.device)
        if result.returncode != 0:
            logger.error("Reboot command failed with exit status %s: %s", result.returncode, result.stdout.strip())
        return templates.TemplateResponse(
            request,
            "system_rebooted.html",
            {
                "user": session_user(request.session),
                "pending": pending,
                "reboot_ok": result.returncode == 0,
                "reboot_output": result.stdout.strip(),
            },
        )

    return app
