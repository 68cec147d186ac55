"""Configuration dataclasses for the Google Drive integration.

This module defines the configuration structure for the per-student Drive
integration: the OAuth client students consent to, the folder layout files
are delivered into, and the limits applied to every upload.
"""

from dataclasses import dataclass, field
from typing import Dict, List

# 50 MB, the largest payload a single fan-out upload accepts
DEFAULT_MAX_UPLOAD_BYTES = 50 * 1024 * 1024


@dataclass
class OAuthClientConfig:
    """A Google OAuth web client."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    auth_uri: str = "https://accounts.google.com/o/oauth2/auth"
    token_uri: str = "https://oauth2.googleapis.com/token"

    def to_client_config(self) -> Dict[str, Dict[str, str]]:
        """Return the client in the shape google_auth_oauthlib expects."""
        return {
            "web": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": self.auth_uri,
                "token_uri": self.token_uri,
                "redirect_uris": [self.redirect_uri] if self.redirect_uri else [],
            }
        }

    def update(self, data: Dict) -> None:
        """Overwrite fields present in ``data``."""
        for key in ("client_id", "client_secret", "redirect_uri", "auth_uri", "token_uri"):
            if key in data:
                setattr(self, key, data[key])


@dataclass
class DriveConfig:
    """Main configuration for the student Drive integration.

    Example:
        config = DriveConfig()
        config.oauth.client_id = "1234.apps.googleusercontent.com"
        config.max_workers = 8
    """

    oauth: OAuthClientConfig = field(default_factory=OAuthClientConfig)
    scopes: List[str] = field(default_factory=lambda: [
        "https://www.googleapis.com/auth/drive.file",
    ])
    root_folder_label: str = "SLRTCE Files"
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    request_timeout_seconds: float = 30.0
    max_workers: int = 4
    state_max_age_seconds: int = 30 * 24 * 3600
    # Wider than google-auth's own refresh threshold (3m45s)
    token_refresh_margin_seconds: int = 300

    @classmethod
    def from_dict(cls, data: Dict) -> "DriveConfig":
        """Create a DriveConfig from a dictionary (e.g., from YAML).

        Args:
            data: Dictionary with configuration values.

        Returns:
            DriveConfig instance with values from the dictionary.
        """
        config = cls()

        if "oauth" in data:
            config.oauth.update(data["oauth"])
        if "scopes" in data:
            config.scopes = list(data["scopes"])

        config.root_folder_label = data.get("root_folder_label", config.root_folder_label)
        config.max_upload_bytes = int(data.get("max_upload_bytes", config.max_upload_bytes))
        config.request_timeout_seconds = float(
            data.get("request_timeout_seconds", config.request_timeout_seconds)
        )
        config.max_workers = max(1, int(data.get("max_workers", config.max_workers)))
        config.state_max_age_seconds = int(
            data.get("state_max_age_seconds", config.state_max_age_seconds)
        )
        config.token_refresh_margin_seconds = int(
            data.get("token_refresh_margin_seconds", config.token_refresh_margin_seconds)
        )

        return config
