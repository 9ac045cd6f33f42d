from __future__ import annotations

import logging
import os
from typing import Any, Dict, Sequence

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2 import service_account


logger = logging.getLogger(__name__)

FIRESTORE_SCOPE = "https://www.googleapis.com/auth/datastore"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets.readonly"
TOKEN_URI = "https://oauth2.googleapis.com/token"


class ServiceAccount:
    """Bearer tokens for the Firebase service account.

    Reads ``FIREBASE_CLIENT_EMAIL`` and ``FIREBASE_PRIVATE_KEY`` (escaped
    ``\\n`` sequences are accepted, as hosting dashboards store them that
    way). The token is cached until google-auth reports it as expired.
    """

    def __init__(self, scopes: Sequence[str]) -> None:
        self.client_email = os.getenv("FIREBASE_CLIENT_EMAIL", "").strip()
        self.private_key = os.getenv("FIREBASE_PRIVATE_KEY", "").replace("\\n", "\n").strip()
        self.project_id = os.getenv("FIREBASE_PROJECT_ID", "")
        self.scopes = list(scopes)
        self._credentials: Any = None

    @property
    def configured(self) -> bool:
        return bool(self.client_email and self.private_key)

    def authorization_header(self) -> Dict[str, str]:
        if not self.configured:
            raise RuntimeError("Tjenestekontoen er ikke konfigurert. Sett FIREBASE_CLIENT_EMAIL og FIREBASE_PRIVATE_KEY.")

        if self._credentials is None:
            info = {
                "type": "service_account",
                "client_email": self.client_email,
                "private_key": self.private_key,
                "token_uri": TOKEN_URI,
                "project_id": self.project_id,
            }
            try:
                self._credentials = service_account.Credentials.from_service_account_info(info, scopes=self.scopes)
            except ValueError as exc:
                raise RuntimeError("Ugyldig nøkkel for tjenestekontoen (FIREBASE_PRIVATE_KEY).") from exc

        if not self._credentials.valid:
            try:
                self._credentials.refresh(Request())
            except GoogleAuthError as exc:
                logger.warning("Service account token refresh failed (%s)", exc)
                raise RuntimeError("Kunne ikke autentisere mot Google med tjenestekontoen.") from exc
            logger.info("Refreshed service account token for %s", self.client_email)

        return {"Authorization": f"Bearer {self._credentials.token}"}
