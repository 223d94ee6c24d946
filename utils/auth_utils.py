import os
import logging
import jwt
from http.cookies import SimpleCookie
import azure.functions as func
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.backends import default_backend

from utils import config

PEM_HEADER = "-----BEGIN PUBLIC KEY-----"
PEM_FOOTER = "-----END PUBLIC KEY-----"


def get_public_key():
    """
    Public half of the login service's RS256 key, from Key Vault or JWT_PUBLIC_KEY.
    Accepts a full PEM, a PEM with literal \\n sequences, or the bare base64 body.
    """
    pem = config.get_secret("JWT_PUBLIC_KEY")
    if not pem:
        logging.warning("JWT_PUBLIC_KEY is not configured; bearer and cookie auth disabled.")
        return None

    pem = pem.replace("\\n", "\n").strip()
    if not pem.startswith(PEM_HEADER):
        pem = f"{PEM_HEADER}\n{pem}\n{PEM_FOOTER}"

    try:
        return serialization.load_pem_public_key(pem.encode(), backend=default_backend())
    except ValueError as e:
        logging.error(f"Failed to load public key: {e}")
        return None


def verify_jwt_token(token: str) -> dict | None:
    """
    Verify an RS256 token from the login service. Tokens without `exp` are refused.
    Returns the claims, or None when the token is unusable.
    """
    public_key = get_public_key()
    if not public_key:
        return None

    try:
        return jwt.decode(
            token,
            public_key,
            algorithms=["RS256"],
            options={"require": ["exp"], "verify_aud": False, "verify_iss": False},
        )
    except jwt.ExpiredSignatureError:
        logging.info("Rejected expired JWT.")
    except jwt.InvalidTokenError as e:
        logging.warning(f"Invalid JWT Token: {e}")

    return None


def _token_from_request(req: func.HttpRequest) -> str | None:
    cookie_header = req.headers.get("Cookie")
    if cookie_header:
        cookie_name = os.getenv("JWT_COOKIE_NAME", "auth_token")
        try:
            simple_cookie = SimpleCookie()
            simple_cookie.load(cookie_header)
            if cookie_name in simple_cookie:
                return simple_cookie[cookie_name].value
        except Exception as e:
            logging.error(f"Error parsing cookies: {e}")

    # Bearer token as fallback
    auth_header = req.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1]
    return None


def get_claims_from_jwt(req: func.HttpRequest) -> dict | None:
    """
    Extracts the JWT from the auth cookie (or Authorization header) and returns
    its verified payload: {id, role, email, ...} as issued by the login service.
    """
    token = _token_from_request(req)
    if not token:
        return None
    return verify_jwt_token(token)
