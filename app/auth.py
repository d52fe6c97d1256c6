from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
import secrets

security = HTTPBasic()

def single_user_guard(request: Request, creds: HTTPBasicCredentials = Depends(security)) -> str:
    """Check the author's Basic credentials and return the requester id."""
    settings = request.app.state.settings
    ok_user = secrets.compare_digest(creds.username, settings.BASIC_USER)
    ok_pass = secrets.compare_digest(creds.password, settings.BASIC_PASS)
    if not (ok_user and ok_pass):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )
    return creds.username
