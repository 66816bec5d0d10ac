#!/usr/bin/env python3
"""
admin_api.py - Management API fuer den Enrolment-Sync

REST-Endpoints zum Ausloesen eines Syncs fuer einen Benutzer (mit
uebergebenen Claims oder Claims aus Keycloak), zum Lesen des Audit-Logs
und der aktuellen Konfiguration.
"""

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, ConfigDict
from typing import List, Dict, Optional, Any
import os
import secrets
import logging
from datetime import datetime, timezone

from enrol_saml.modules.audit.AuditLog import AuditLog
from enrol_saml.modules.keycloak.ClaimMapper import ClaimMapper
from enrol_saml.modules.models.ClaimSet import ClaimSet
from enrol_saml.modules.models.ConfigurationStorage import ConfigurationStorage
from enrol_saml.modules.models.SyncOutcome import ClaimFormatError, SyncOutcome
from enrol_saml.modules.moodle.DirectoryStore import DirectoryStore
from enrol_saml.modules.moodle.moosh import MooshWrapper
from enrol_saml.sync import build_directory, run_for_user

# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("admin_api")

# =============================================================================
# APP INITIALIZATION
# =============================================================================

app = FastAPI(
    title="Enrol SAML Sync",
    description="Management API fuer den Enrolment-Sync aus IdP-Claims",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

security = HTTPBasic()

_config: Optional[ConfigurationStorage] = None


def get_config() -> ConfigurationStorage:
    """Laedt die Konfiguration beim ersten Zugriff"""
    global _config
    if _config is None:
        _config = ConfigurationStorage()
    return _config


def get_directory(config: ConfigurationStorage = Depends(get_config)) -> DirectoryStore:
    return build_directory(config)


def get_claim_mapper(config: ConfigurationStorage = Depends(get_config)) -> ClaimMapper:
    return ClaimMapper.from_config(config)


def verify_credentials(
    credentials: HTTPBasicCredentials = Depends(security),
    config: ConfigurationStorage = Depends(get_config)
) -> str:
    """Basic Auth Verifizierung"""
    expected_user = config.get("ADMIN_UI_USER", "admin")
    expected_pass = config.get("ADMIN_UI_PASSWORD", "")
    is_user = secrets.compare_digest(credentials.username.encode(), expected_user.encode())
    is_pass = secrets.compare_digest(credentials.password.encode(), expected_pass.encode())
    if not (expected_pass and is_user and is_pass):
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class CourseClaim(BaseModel):
    model_config = ConfigDict(extra="allow")

    group: Optional[str] = None

class RoleCourses(BaseModel):
    active: Dict[str, CourseClaim] = {}
    inactive: Dict[str, CourseClaim] = {}

class ClaimSetRequest(BaseModel):
    mapped_roles: List[str] = []
    mapped_courses: Dict[str, RoleCourses] = {}

class SyncResponse(BaseModel):
    username: str
    errors: Dict[str, List[str]]
    aborted: bool = False
    terminal_error: Optional[str] = None
    changes: Dict[str, int]
    timestamp: str

class LogEntry(BaseModel):
    timestamp: Optional[str] = None
    client: Optional[str] = None
    level: str
    message: str

class HealthCheck(BaseModel):
    status: str
    checks: Dict[str, bool]
    timestamp: str


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def _audit_log(config: ConfigurationStorage) -> AuditLog:
    settings = config.enrol_settings()
    return AuditLog(settings.logfile, settings.data_root)

def _check_moodle(config: ConfigurationStorage) -> bool:
    """Prueft ob moosh gegen die Moodle-Installation laeuft"""
    moosh = MooshWrapper(moodle_path=config.get("MOODLE_PATH"), timeout=10)
    return moosh.check_connection()

def _check_audit_log(config: ConfigurationStorage) -> bool:
    """Prueft ob das Audit-Log beschreibbar ist (nicht konfiguriert = OK)"""
    destination = _audit_log(config).destination
    if not destination:
        return True
    if os.path.exists(destination):
        return os.access(destination, os.W_OK)
    return os.access(os.path.dirname(destination) or ".", os.W_OK)

def _client_addr(request: Request) -> str:
    return request.client.host if request.client else "-"

def _response(username: str, outcome: SyncOutcome) -> Dict[str, Any]:
    result = outcome.to_dict()
    return {
        "username": username,
        "errors": result["errors"],
        "aborted": result["aborted"],
        "terminal_error": result["terminal_error"],
        "changes": result["changes"],
        "timestamp": _now(),
    }


# =============================================================================
# HEALTH
# =============================================================================

@app.get("/api/health", tags=["Health"], response_model=HealthCheck)
def get_health(config: ConfigurationStorage = Depends(get_config)):
    """Health-Check Endpoint (ohne Auth fuer Monitoring)"""
    checks = {
        "moodle": _check_moodle(config),
        "audit_log": _check_audit_log(config),
    }
    return {
        "status": "healthy" if all(checks.values()) else "degraded",
        "checks": checks,
        "timestamp": _now(),
    }


# =============================================================================
# SYNC ENDPOINTS
# =============================================================================

@app.post("/api/sync/{username}", tags=["Sync"], response_model=SyncResponse)
def sync_user(
    username: str,
    body: ClaimSetRequest,
    request: Request,
    config: ConfigurationStorage = Depends(get_config),
    directory: DirectoryStore = Depends(get_directory),
    user: str = Depends(verify_credentials)
):
    """Synchronisiert die Einschreibungen eines Benutzers mit den uebergebenen Claims"""
    try:
        claims = ClaimSet.from_dict(body.model_dump(exclude_none=True), remote_addr=_client_addr(request))
    except ClaimFormatError as e:
        raise HTTPException(status_code=422, detail=str(e))

    logger.info(f"Enrolment sync for {username} triggered by {user}")
    outcome = run_for_user(config, username, claims, directory=directory)
    return _response(username, outcome)


@app.post("/api/sync/{username}/keycloak", tags=["Sync"], response_model=SyncResponse)
def sync_user_from_keycloak(
    username: str,
    request: Request,
    config: ConfigurationStorage = Depends(get_config),
    directory: DirectoryStore = Depends(get_directory),
    mapper: ClaimMapper = Depends(get_claim_mapper),
    user: str = Depends(verify_credentials)
):
    """Synchronisiert die Einschreibungen eines Benutzers mit Claims aus Keycloak"""
    claims = mapper.claims_for_username(username, remote_addr=_client_addr(request))
    logger.info(f"Keycloak enrolment sync for {username} triggered by {user}")
    outcome = run_for_user(config, username, claims, directory=directory)
    return _response(username, outcome)


@app.get("/api/sync/logs", tags=["Sync"], response_model=List[LogEntry])
def get_sync_logs(
    lines: int = Query(100, ge=1, le=1000),
    level: str = Query("all", pattern="^(all|info|error)$"),
    config: ConfigurationStorage = Depends(get_config),
    user: str = Depends(verify_credentials)
):
    """Holt die letzten Eintraege des Audit-Logs"""
    return _audit_log(config).read_tail(lines, level)


@app.get("/api/sync/config", tags=["Sync"])
def get_sync_config(
    config: ConfigurationStorage = Depends(get_config),
    user: str = Depends(verify_credentials)
):
    """Holt aktuelle Sync-Konfiguration (ohne Secrets)"""
    return config.dump()


# =============================================================================
# MAIN
# =============================================================================

def main():
    import uvicorn

    port = int(os.getenv("ADMIN_UI_PORT", "5000"))
    host = os.getenv("ADMIN_UI_HOST", "0.0.0.0")

    uvicorn.run(
        "enrol_saml.admin_api:app",
        host=host,
        port=port,
        reload=os.getenv("DEBUG", "0") == "1",
        log_level="info"
    )


if __name__ == "__main__":
    main()
