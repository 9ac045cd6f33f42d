"""Zettle OAuth, payment links and Reader Connect link offers.

Tokens obtained through the authorization-code flow live in the
``secrets/zettle`` document and are refreshed shortly before they expire.
Payment links use a separate JWT-bearer assertion token that is requested for
every link.
"""

from __future__ import annotations

import base64
import datetime as dt
import hashlib
import logging
import os
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from .loader import DataStore


logger = logging.getLogger(__name__)

ZETTLE_AUTHORIZE_URL = "https://oauth.zettle.com/authorize"
ZETTLE_TOKEN_URL = "https://oauth.zettle.com/token"
ZETTLE_PAYMENT_LINKS_URL = "https://pusher.zettle.com/v2/payment-links"
ZETTLE_LINK_OFFERS_URL = "https://reader-connect.zettle.com/v1/integrator/link-offers"
ZETTLE_SCOPES = "READ:USERINFO READ:PAYMENT WRITE:PAYMENT"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

ZETTLE_SECRET = "zettle"
REFRESH_MARGIN = dt.timedelta(seconds=60)

MISSING_CODE_OR_STATE = "Mangler 'code' eller 'state' i URL-en. Prøv igjen."
INVALID_STATE = "Ugyldig 'state'. Sikkerhetssjekk feilet. Prøv igjen."
MISSING_VERIFIER = "Mangler 'verifier'. Sikkerhetssjekk feilet. Prøv igjen."
CONNECTED = "Zettle-kontoen er koblet til."


def generate_pkce_pair() -> Tuple[str, str]:
    """Return ``(verifier, challenge)`` for the S256 PKCE method."""

    verifier = secrets.token_urlsafe(48)
    return verifier, code_challenge(verifier)


def code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def token_expires_soon(expires_at: Optional[str], now: dt.datetime | None = None) -> bool:
    if not expires_at:
        return True
    try:
        expiry = dt.datetime.fromisoformat(str(expires_at).replace("Z", "+00:00"))
    except ValueError:
        return True
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=dt.timezone.utc)
    now = now or dt.datetime.now(dt.timezone.utc)
    return expiry - now <= REFRESH_MARGIN


class ZettleClient:
    def __init__(self, store: DataStore) -> None:
        self.store = store
        self.client_id = os.getenv("ZETTLE_CLIENT_ID", "")
        self.client_secret = os.getenv("ZETTLE_CLIENT_SECRET", "")
        self.redirect_uri = os.getenv("ZETTLE_REDIRECT_URI", "")
        self.user_assertion_token = os.getenv("ZETTLE_USER_ASSERTION_TOKEN", "")
        self.payment_redirect_url = os.getenv("ZETTLE_PAYMENT_REDIRECT_URL", "https://kartpass.no/payment-complete")

    # ------------------------------------------------------------------
    # Authorization-code flow

    def authorize_url(self, state: str, verifier: str) -> str:
        client_id = self._require_client_id()
        params = {
            "response_type": "code",
            "client_id": client_id,
            "scope": ZETTLE_SCOPES,
            "state": state,
            "code_challenge": code_challenge(verifier),
            "code_challenge_method": "S256",
        }
        if self.redirect_uri:
            params["redirect_uri"] = self.redirect_uri
        return f"{ZETTLE_AUTHORIZE_URL}?{urlencode(params)}"

    def exchange_code(self, code: str, verifier: str) -> Dict[str, Any]:
        """Swap an authorization code for tokens and persist them."""

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self._require_client_id(),
            "code_verifier": verifier,
        }
        if self.client_secret:
            form["client_secret"] = self.client_secret
        if self.redirect_uri:
            form["redirect_uri"] = self.redirect_uri

        payload = self._token_request(form, "Kunne ikke hente tilgangsnøkler fra Zettle.")
        return self._store_tokens(payload)

    def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._require_client_id(),
        }
        if self.client_secret:
            form["client_secret"] = self.client_secret

        payload = self._token_request(form, "Kunne ikke fornye Zettle-tilgangen. Koble til Zettle på nytt.")
        logger.info("Refreshed Zettle access token")
        return self._store_tokens(payload, fallback_refresh=refresh_token)

    def valid_access_token(self) -> str:
        tokens = self.store.fetch_secret(ZETTLE_SECRET)
        access_token = tokens.get("accessToken")
        if not access_token:
            raise RuntimeError("Zettle er ikke koblet til. Koble til Zettle-kontoen først.")

        if token_expires_soon(tokens.get("expiresAt")):
            refresh_token = tokens.get("refreshToken")
            if not refresh_token:
                raise RuntimeError("Zettle-tilgangen har utløpt. Koble til Zettle på nytt.")
            access_token = self.refresh_access_token(refresh_token)["accessToken"]
        return access_token

    # ------------------------------------------------------------------
    # Reader Connect & payment links

    def create_link_offer(self) -> Dict[str, str]:
        """Request a pairing code and the WebSocket URL that reports when it is claimed."""

        access_token = self.valid_access_token()
        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(
                    ZETTLE_LINK_OFFERS_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                    json={},
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_zettle_detail(exc.response)
            logger.warning("Zettle link offer failed (%s)", detail or exc)
            raise RuntimeError(f"Kunne ikke hente paringskode fra Zettle: {detail or 'ukjent feil'}") from exc
        except httpx.HTTPError as exc:
            logger.warning("Zettle link offer unavailable (%s)", exc)
            raise RuntimeError("Kunne ikke kontakte Zettle for å hente paringskode.") from exc

        code = payload.get("code") if isinstance(payload, dict) else None
        socket_url = None
        if isinstance(payload, dict):
            socket_url = payload.get("webSocketUrl") or payload.get("websocketUrl")
        if not code or not socket_url:
            raise RuntimeError("Uventet svar fra Zettle ved henting av paringskode.")
        return {"code": str(code), "webSocketUrl": str(socket_url)}

    def create_payment_link(self, amount: int, reference: str) -> Dict[str, str]:
        """Create a hosted payment link; ``amount`` is in øre."""

        if amount <= 0:
            raise ValueError("Beløpet må være større enn 0.")
        client_id = self._require_client_id()
        if not self.user_assertion_token:
            raise RuntimeError("Mangler Zettle API-nøkler eller bruker-token. Sjekk serverkonfigurasjonen.")

        token_payload = self._token_request(
            {
                "grant_type": JWT_BEARER_GRANT,
                "client_id": client_id,
                "assertion": self.user_assertion_token,
            },
            "Feil ved henting av Zettle-token.",
        )
        access_token = token_payload.get("access_token")
        if not access_token:
            raise RuntimeError("Feil ved henting av Zettle-token.")

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(
                    ZETTLE_PAYMENT_LINKS_URL,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "X-Idempotency-Key": str(uuid.uuid4()),
                    },
                    json={
                        "amount": amount,
                        "referenceNumber": reference,
                        "redirectUrl": self.payment_redirect_url,
                    },
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            detail = self._extract_zettle_detail(exc.response) if isinstance(exc, httpx.HTTPStatusError) else None
            logger.warning("Zettle payment link failed (%s)", detail or exc)
            raise RuntimeError("Kunne ikke opprette betalingslenke med Zettle. Sjekk server-logger.") from exc

        return {"url": str(payload.get("url") or ""), "qrCode": str(payload.get("qrCode") or "")}

    # ------------------------------------------------------------------

    def _require_client_id(self) -> str:
        client_id = self.client_id or str(self.store.fetch_site_settings().get("zettleClientId") or "")
        if not client_id:
            raise RuntimeError("Zettle Client ID er ikke konfigurert.")
        return client_id

    def _token_request(self, form: Dict[str, str], failure: str) -> Dict[str, Any]:
        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(ZETTLE_TOKEN_URL, data=form)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_zettle_detail(exc.response)
            logger.warning("Zettle token request (%s) failed: %s", form.get("grant_type"), detail or exc)
            message = f"{failure} {detail}" if detail else failure
            raise RuntimeError(message) from exc
        except httpx.HTTPError as exc:
            logger.warning("Zettle token endpoint unavailable (%s)", exc)
            raise RuntimeError(failure) from exc

        if not isinstance(payload, dict):
            raise RuntimeError(failure)
        return payload

    def _store_tokens(self, payload: Dict[str, Any], fallback_refresh: str | None = None) -> Dict[str, Any]:
        access_token = payload.get("access_token")
        if not access_token:
            raise RuntimeError("Zettle returnerte ingen tilgangsnøkkel.")

        expires_in = int(payload.get("expires_in") or 0)
        expires_at = dt.datetime.now(dt.timezone.utc) + dt.timedelta(seconds=expires_in)
        tokens = {
            "accessToken": access_token,
            "refreshToken": payload.get("refresh_token") or fallback_refresh,
            "expiresAt": expires_at.replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        }
        self.store.save_secret(ZETTLE_SECRET, tokens)
        return tokens

    def _extract_zettle_detail(self, response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        if isinstance(payload, dict):
            for key in ("error_description", "developerMessage", "message", "error"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None


@dataclass
class OAuthCallbackResult:
    success: bool
    message: str


def handle_oauth_callback(
    zettle: ZettleClient,
    code: Optional[str],
    state: Optional[str],
    stored_state: Optional[str],
    stored_verifier: Optional[str],
    error: Optional[str] = None,
    error_description: Optional[str] = None,
) -> OAuthCallbackResult:
    """Verify the provider redirect and exchange the code.

    The checks run in a fixed order and the exchange is only attempted once
    the returned ``state`` matches the one stored when the flow started.
    Clearing the stored state and verifier is the caller's job.
    """

    if error:
        return OAuthCallbackResult(False, error_description or error)
    if not code or not state:
        return OAuthCallbackResult(False, MISSING_CODE_OR_STATE)
    if not stored_state or not secrets.compare_digest(state.encode(), stored_state.encode()):
        logger.warning("Zettle OAuth callback rejected: state mismatch")
        return OAuthCallbackResult(False, INVALID_STATE)
    if not stored_verifier:
        return OAuthCallbackResult(False, MISSING_VERIFIER)

    try:
        zettle.exchange_code(code, stored_verifier)
    except RuntimeError as exc:
        return OAuthCallbackResult(False, str(exc))
    return OAuthCallbackResult(True, CONNECTED)
