#!/usr/bin/env python3
"""
Settings management for Invoice Processor.

Handles persistent user configuration stored in a JSON file.
Settings are stored in the user's config directory:
- macOS: ~/Library/Application Support/InvoiceProcessor/settings.json
- Linux: ~/.config/InvoiceProcessor/settings.json
- Windows: %APPDATA%/InvoiceProcessor/settings.json

Set INVOICE_PROCESSOR_CONFIG_DIR to use a different directory.

API keys are stored securely in the OS keychain (not in the JSON file).
"""

import os
import sys
import json
import logging
from pathlib import Path
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

# Load environment variables from .env file
try:
    from dotenv import load_dotenv
    load_dotenv()
except (PermissionError, OSError):
    pass

logger = logging.getLogger("invoice_processor.settings")

# Service name for keychain storage
KEYCHAIN_SERVICE = "InvoiceProcessor"

# Keys that should be stored in keychain instead of JSON
SECURE_KEYS = {"openai_api_key"}


def get_secure_value(key: str) -> Optional[str]:
    """Get a secure value from OS keychain."""
    try:
        value = keyring.get_password(KEYCHAIN_SERVICE, key)
        return value if value else None
    except KeyringError as e:
        logger.debug(f"Keychain lookup failed for {key}: {e}")
        return None


def set_secure_value(key: str, value: str) -> bool:
    """Set a secure value in OS keychain. Returns True on success."""
    try:
        if value:
            keyring.set_password(KEYCHAIN_SERVICE, key, value)
        else:
            # Delete the key if value is empty
            try:
                keyring.delete_password(KEYCHAIN_SERVICE, key)
            except PasswordDeleteError:
                pass  # Key doesn't exist, that's fine
        return True
    except KeyringError as e:
        logger.warning(f"Could not store {key} in keychain: {e}")
        return False


def delete_secure_value(key: str) -> bool:
    """Delete a secure value from OS keychain. Returns True on success."""
    try:
        keyring.delete_password(KEYCHAIN_SERVICE, key)
        return True
    except KeyringError:
        return False


def get_config_dir() -> Path:
    """Get the platform-appropriate config directory."""
    override = os.environ.get("INVOICE_PROCESSOR_CONFIG_DIR")
    if override:
        config_dir = Path(override).expanduser()
    elif sys.platform == "darwin":
        config_dir = Path.home() / "Library" / "Application Support" / "InvoiceProcessor"
    elif sys.platform == "win32":
        appdata = os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming"))
        config_dir = Path(appdata) / "InvoiceProcessor"
    else:
        # Linux and others - follow XDG spec
        xdg_config = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))
        config_dir = Path(xdg_config) / "InvoiceProcessor"

    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_settings_path() -> Path:
    """Get path to the settings file."""
    return get_config_dir() / "settings.json"


# Default settings
DEFAULT_SETTINGS = {
    # Directory paths
    "watch_folder": "",
    "output_folder": "",

    # Comma-separated filename terms to skip
    "blocked_terms": "",

    # Vision provider settings
    "openai_api_key": "",
    "openai_model": "gpt-4o",
}


class Settings:
    """Manage application settings with persistence.

    Secure keys (API keys) are stored in the OS keychain.
    Other settings are stored in a JSON file.
    """

    def __init__(self):
        self._settings = DEFAULT_SETTINGS.copy()
        self._load()
        self._migrate_keys_to_keychain()

    def _load(self):
        """Load settings from disk."""
        settings_path = get_settings_path()
        if settings_path.exists():
            try:
                with open(settings_path, 'r') as f:
                    saved = json.load(f)
                    # Merge with defaults (in case new settings were added)
                    if isinstance(saved, dict):
                        self._settings.update(saved)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Could not load settings: {e}")

    def _migrate_keys_to_keychain(self):
        """Move any API keys found in the JSON file to the keychain."""
        migrated = False
        for key in SECURE_KEYS:
            json_value = self._settings.get(key)
            if json_value and set_secure_value(key, json_value):
                self._settings[key] = ""
                migrated = True
        if migrated:
            self.save()

    def save(self):
        """Save settings to disk (excluding secure keys)."""
        settings_path = get_settings_path()
        try:
            # Secure keys only land in JSON when the keychain refused them
            save_data = {
                k: v for k, v in self._settings.items()
                if k not in SECURE_KEYS or v
            }
            with open(settings_path, 'w') as f:
                json.dump(save_data, f, indent=2)
        except OSError as e:
            logger.warning(f"Could not save settings: {e}")

    def get(self, key: str, default=None):
        """Get a setting value. Secure keys are fetched from keychain."""
        if key in SECURE_KEYS:
            value = get_secure_value(key)
            if value:
                return value
            return self._settings.get(key) or default
        return self._settings.get(key, default)

    def set(self, key: str, value):
        """Set a setting value. Secure keys are stored in keychain."""
        self.update({key: value})

    def update(self, updates: dict):
        """Update multiple settings at once and save."""
        for key, value in updates.items():
            if key in SECURE_KEYS:
                # Fallback to in-memory/JSON if keychain unavailable
                self._settings[key] = "" if set_secure_value(key, value) else value
            else:
                self._settings[key] = value
        self.save()

    def reset(self):
        """Reset all settings to defaults."""
        for key in SECURE_KEYS:
            delete_secure_value(key)
        self._settings = DEFAULT_SETTINGS.copy()
        self.save()

    @property
    def watch_folder(self) -> str:
        """Get the scan folder.

        Priority: Saved setting (UI) > Environment variable
        """
        return self._settings.get("watch_folder") or os.environ.get("WATCH_FOLDER", "")

    @property
    def output_folder(self) -> str:
        """Get the organized folder.

        Priority: Saved setting (UI) > Environment variable
        """
        return self._settings.get("output_folder") or os.environ.get("OUTPUT_FOLDER", "")

    @property
    def blocked_terms(self) -> str:
        return self._settings.get("blocked_terms") or os.environ.get("BLOCKED_TERMS", "")

    @property
    def openai_api_key(self) -> str:
        return self.get("openai_api_key") or os.environ.get("OPENAI_API_KEY", "")

    @property
    def openai_model(self) -> str:
        return self._settings.get("openai_model") or os.environ.get("OPENAI_MODEL", "")

    def controller_values(self) -> dict:
        """Keyword arguments for ProcessorController.configure()."""
        return {
            "watch_folder": self.watch_folder,
            "output_folder": self.output_folder,
            "api_key": self.openai_api_key,
            "blocked_terms": self.blocked_terms,
            "model": self.openai_model,
        }

    def validate_directories(self) -> tuple[bool, list[str]]:
        """Validate that configured directories exist or can be created.

        Returns (is_valid, list_of_errors)
        """
        errors = []

        for label, value in (("Scan", self.watch_folder), ("Organized", self.output_folder)):
            if not value:
                errors.append(f"{label} folder is not set")
                continue
            path = Path(value).expanduser()
            if path.exists():
                if not path.is_dir():
                    errors.append(f"{label} path exists but is not a directory: {path}")
                elif not os.access(path, os.W_OK):
                    errors.append(f"{label} folder is not writable: {path}")
            else:
                parent = path.parent
                if parent.exists() and not os.access(parent, os.W_OK):
                    errors.append(f"Cannot create {label.lower()} folder (parent not writable): {path}")

        return len(errors) == 0, errors

    def create_directories(self) -> tuple[bool, Optional[str]]:
        """Create the configured directories if they don't exist.

        Returns (success, error_message)
        """
        try:
            for value in (self.watch_folder, self.output_folder):
                if value:
                    Path(value).expanduser().mkdir(parents=True, exist_ok=True)
            return True, None
        except OSError as e:
            return False, str(e)

    def to_dict(self) -> dict:
        """Export settings as a dictionary (secure keys masked)."""
        data = self._settings.copy()
        for key in SECURE_KEYS:
            data[key] = "********" if self.get(key) else ""
        return data


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Force reload settings from disk."""
    global _settings
    _settings = Settings()
    return _settings
