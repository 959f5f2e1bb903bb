"""Google Drive client helpers for photo storage.

Credentials are resolved the same way for uploads and downloads: a user
OAuth token at GDRIVE_TOKEN_PATH is preferred, otherwise the service account
at GDRIVE_CREDENTIALS_PATH is used (optionally impersonating
GDRIVE_IMPERSONATE_USER via domain-wide delegation).

Copyright (c) Bryn Gwalad 2025
"""

import logging
import os
from typing import Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload

logger = logging.getLogger("inventory_api")

SCOPES = ["https://www.googleapis.com/auth/drive"]


def drive_enabled() -> bool:
    return os.getenv("USE_GOOGLE_DRIVE", "0").strip().lower() in ("1", "true", "yes")


def build_drive_service():
    """Return an authenticated Drive v3 client, or None when no credentials load."""
    token_path = os.getenv("GDRIVE_TOKEN_PATH", "environment/token.json")
    if os.path.exists(token_path):
        try:
            from google.oauth2.credentials import Credentials as UserCredentials

            logger.info("Using OAuth token from %s to build Drive client", token_path)
            creds = UserCredentials.from_authorized_user_file(token_path, scopes=SCOPES)
            return build("drive", "v3", credentials=creds)
        except Exception:
            logger.exception("Failed to load user OAuth token from %s; falling back to service account", token_path)

    creds_path = os.getenv("GDRIVE_CREDENTIALS_PATH", "credentials.json")
    if not os.path.exists(creds_path):
        logger.error("GDrive credentials file not found at %s", creds_path)
        return None
    try:
        from google.oauth2.service_account import Credentials as ServiceAccountCredentials

        creds = ServiceAccountCredentials.from_service_account_file(creds_path, scopes=SCOPES)
        subject = os.getenv("GDRIVE_IMPERSONATE_USER")
        if subject:
            creds = creds.with_subject(subject)
            logger.info("Impersonating user %s for Drive access", subject)
        return build("drive", "v3", credentials=creds)
    except Exception:
        logger.exception("Failed to load service account credentials from %s", creds_path)
        return None


def upload_file(service, path: str, filename: str, content_type: Optional[str] = None) -> Optional[str]:
    """Upload ``path`` and make it publicly readable. Returns the Drive file id or None."""
    folder_id = os.getenv("GDRIVE_FOLDER_ID")
    media = MediaFileUpload(path, mimetype=content_type or "application/octet-stream")
    body = {"name": filename}
    if folder_id:
        body["parents"] = [folder_id]
    try:
        # supportsAllDrives is required for Shared Drive folders and harmless otherwise
        created = service.files().create(
            body=body,
            media_body=media,
            fields="id",
            supportsAllDrives=True,
        ).execute()
    except HttpError as e:
        logger.error("Drive upload HttpError for %s: %s", path, e)
        if getattr(e.resp, "status", None) == 403:
            logger.error(
                "Drive API returned 403. Service accounts have no storage quota in My Drive; "
                "point GDRIVE_FOLDER_ID at a Shared Drive folder or use an OAuth token."
            )
        return None

    file_id = created.get("id")
    if not file_id:
        logger.error("Drive upload did not return a file id for %s; response=%s", path, created)
        return None

    try:
        service.permissions().create(
            fileId=file_id,
            body={"role": "reader", "type": "anyone"},
            supportsAllDrives=True,
        ).execute()
    except HttpError:
        logger.warning("Could not set public permission for file %s", file_id)
    return file_id


def download_file(service, file_id: str) -> bytes:
    """Return the content of a Drive file."""
    return service.files().get_media(fileId=file_id, supportsAllDrives=True).execute()
