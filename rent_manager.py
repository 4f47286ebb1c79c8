"""
Rent Manager - Backend Application
A local backend for the rental management desktop app: properties, tenants,
leases, payments, documents, backups and lease contract generation.
"""

import os
import io
import sys
import csv
import json
import uuid
import shutil
import logging
import functools
import zipfile
import threading
import subprocess
import webbrowser
from datetime import datetime, date, timedelta
from urllib.parse import urlparse

import jinja2
from docx.opc.exceptions import PackageNotFoundError
from docxtpl import DocxTemplate
from flask import Blueprint, Flask, current_app, jsonify, request, send_from_directory
from werkzeug.exceptions import HTTPException


COLLECTIONS = ("properties", "tenants", "events", "expenses", "payments")

DEFAULT_SETTINGS = {
    "notifyLeaseExpiry": True,
    "notifyLeaseDays": 30,
    "currencySymbol": "₪",
    "accentColor": "#0d6efd",
    "theme": "system",
    "graphColor": "#22c55e",
    "animationsEnabled": True,
    "customFields": [],
}

# Backup archive layout
DATA_ENTRY = "data.json"
DOCUMENTS_PREFIX = "documents/"

# Entry timestamp for rendered contracts (zip minimum date)
FIXED_ZIP_TIMESTAMP = (1980, 1, 1, 0, 0, 0)

class Config:
    SECRET_KEY = os.environ.get("RENT_MANAGER_SECRET_KEY", "dev-secret-key")
    USER_DATA_PATH = os.environ.get(
        "RENT_MANAGER_DATA_DIR",
        os.path.join(os.path.expanduser("~"), ".rent-manager"),
    )
    # Zero-padded day/month/year
    DATE_FORMAT = os.environ.get("RENT_MANAGER_DATE_FORMAT", "%d/%m/%Y")
    BACKUP_RETENTION_DAYS = 7
    SHUTDOWN_TIMEOUT = 2.0
    RUN_BACKUP_SWEEP = True


# ----------------------------------------------------------------
# ERROR TAXONOMY
# ----------------------------------------------------------------
# Core functions raise these; the HTTP boundary turns every one of
# them into {"success": False, "error": <message>, "code": <code>}.
# Nothing here terminates the process.
# ----------------------------------------------------------------


class RentManagerError(Exception):
    code = "error"
    status = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class UserCanceled(RentManagerError):
    """A file dialog was dismissed. A normal outcome, never logged as an error."""
    code = "user_canceled"
    status = 400


class NotFound(RentManagerError):
    code = "not_found"
    status = 404


class InvalidFormat(RentManagerError):
    code = "invalid_format"
    status = 400


class NoTemplate(RentManagerError):
    code = "no_template"
    status = 409


class TemplateError(RentManagerError):
    code = "template_error"
    status = 422

    def __init__(self, message, missing_fields=None):
        super().__init__(message)
        self.missing_fields = list(missing_fields or [])


class StorageError(RentManagerError):
    """Filesystem failure (reading, writing, copying or archiving)."""
    code = "io_error"
    status = 500


# ----------------------------------------------------------------
# APPLICATION CONTEXT
# ----------------------------------------------------------------


def open_with_system_viewer(path):
    """Hand a file or folder to the host's default application."""
    if sys.platform.startswith("win"):
        os.startfile(path)
    elif sys.platform == "darwin":
        subprocess.Popen(["open", path])
    else:
        subprocess.Popen(["xdg-open", path])


class AppContext:
    """Owns every path and open resource the backend operations use.

    Built once by create_app() and torn down once with close().
    """

    def __init__(self, user_data_path, date_format="%d/%m/%Y", retention_days=7,
                 shutdown_timeout=2.0, opener=None, logger=None):
        self.user_data_path = os.path.abspath(user_data_path)
        self.data_file_path = os.path.join(self.user_data_path, "data.json")
        self.settings_file_path = os.path.join(self.user_data_path, "settings.json")
        self.documents_path = os.path.join(self.user_data_path, "documents")
        self.backups_path = os.path.join(self.user_data_path, "backups")
        self.logs_path = os.path.join(self.user_data_path, "logs")
        self.date_format = date_format
        self.retention_days = retention_days
        self.opener = opener or open_with_system_viewer
        self.logger = logger or logging.getLogger("rent_manager")
        self.handshake = ShutdownHandshake(timeout=shutdown_timeout, logger=self.logger)
        self._log_handler = None

    def ensure_dirs(self):
        for path in (self.documents_path, self.backups_path, self.logs_path):
            os.makedirs(path, exist_ok=True)

    def attach_file_log(self):
        """Mirror the logger into logs/main.log under the user data path."""
        if self._log_handler is not None:
            return
        handler = logging.FileHandler(
            os.path.join(self.logs_path, "main.log"), encoding="utf-8"
        )
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        handler.setLevel(logging.INFO)
        self.logger.addHandler(handler)
        if self.logger.level == logging.NOTSET or self.logger.level > logging.INFO:
            self.logger.setLevel(logging.INFO)
        self._log_handler = handler

    def close(self):
        self.handshake.cancel()
        if self._log_handler is not None:
            self.logger.removeHandler(self._log_handler)
            self._log_handler.close()
            self._log_handler = None


# ----------------------------------------------------------------
# JSON FILE HELPERS
# ----------------------------------------------------------------


def _read_json_file(path):
    """Read a JSON file.

    Returns:
        The decoded value, or None if the file is missing or empty.
        Raises ValueError for invalid JSON and OSError for read failures.
    """
    if not os.path.exists(path):
        return None

    with open(path, "r", encoding="utf-8") as f:
        content = f.read()

    if not content.strip():
        return None

    return json.loads(content)


def _write_json_atomic(path, data):
    """Atomically save data to a JSON file (temp file, fsync, replace).

    Raises:
        StorageError: if the write or the rename fails
    """
    tmp_path = path + ".tmp"

    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_path, path)
    except (IOError, OSError, TypeError, ValueError) as e:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass
        raise StorageError(f"Failed to save {os.path.basename(path)}: {e}") from e


def _find_by_id(records, record_id):
    if not record_id:
        return None
    for record in records or []:
        if isinstance(record, dict) and record.get("id") == record_id:
            return record
    return None


def _format_date(date_format, value):
    """Format an ISO date string as zero-padded day/month/year.

    Returns '—' for empty values and the original text if it cannot be parsed.
    """
    if not value:
        return "—"
    if isinstance(value, (date, datetime)):
        return value.strftime(date_format)
    try:
        return datetime.fromisoformat(str(value)).strftime(date_format)
    except ValueError:
        return str(value)


def _parse_date(value):
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        return None


# ----------------------------------------------------------------
# PRIMARY DATA STORE
# ----------------------------------------------------------------
# data.json holds every collection. It is read wholesale and written
# wholesale; last write wins, there is no revision guard.
#
# {
#   "properties": [...],
#   "tenants":    [...],
#   "events":     [...],
#   "expenses":   [...],
#   "payments":   [...]
# }
# ----------------------------------------------------------------


def empty_dataset():
    return {name: [] for name in COLLECTIONS}


def load_data(ctx):
    """Load the full DataSet from data.json.

    Returns:
        dict: the saved DataSet with all five collections present,
              or an empty DataSet if the file is missing or invalid
    """
    try:
        data = _read_json_file(ctx.data_file_path)
    except ValueError as e:
        ctx.logger.warning("data.json contains invalid JSON: %s", e)
        return empty_dataset()
    except (IOError, OSError) as e:
        ctx.logger.warning("Could not read data.json: %s", e)
        return empty_dataset()

    if data is None:
        return empty_dataset()

    if not isinstance(data, dict):
        ctx.logger.warning("data.json does not hold an object; ignoring it")
        return empty_dataset()

    for name in COLLECTIONS:
        if not isinstance(data.get(name), list):
            data[name] = []
    return data


def save_data(ctx, data):
    """Overwrite data.json with the given DataSet."""
    if not isinstance(data, dict):
        raise InvalidFormat("Data must be an object holding the entity collections.")
    _write_json_atomic(ctx.data_file_path, data)


# ----------------------------------------------------------------
# SETTINGS
# ----------------------------------------------------------------


def load_settings(ctx):
    """Load settings, with defaults merged under any persisted overrides."""
    settings = dict(DEFAULT_SETTINGS)
    settings["customFields"] = []
    try:
        saved = _read_json_file(ctx.settings_file_path)
    except (ValueError, IOError, OSError) as e:
        ctx.logger.error("Could not load settings: %s", e)
        return settings

    if isinstance(saved, dict):
        settings.update(saved)
    return settings


def save_settings(ctx, settings):
    if not isinstance(settings, dict):
        raise InvalidFormat("Settings must be an object.")
    _write_json_atomic(ctx.settings_file_path, settings)


# ----------------------------------------------------------------
# DOCUMENT STORE
# ----------------------------------------------------------------
# Flat directory, one file per document, named <uuid4><extension>.
# The extension is kept only so the host viewer picks the right app.
# ----------------------------------------------------------------


def store_document(ctx, source_path):
    """Copy an externally selected file into the document store.

    Returns:
        dict: {"fileId": "<uuid4><ext>", "originalName": "<basename>"}
    """
    if not source_path:
        raise UserCanceled("Upload canceled by user.")
    if not os.path.isfile(source_path):
        raise NotFound(f"The selected file could not be found: {source_path}")

    original_name = os.path.basename(source_path)
    file_id = f"{uuid.uuid4()}{os.path.splitext(source_path)[1]}"
    new_path = os.path.join(ctx.documents_path, file_id)

    try:
        os.makedirs(ctx.documents_path, exist_ok=True)
        shutil.copyfile(source_path, new_path)
    except (IOError, OSError) as e:
        raise StorageError(f"Failed to store document: {e}") from e

    ctx.logger.info("Stored document %s as %s", original_name, file_id)
    return {"fileId": file_id, "originalName": original_name}


def _is_flat_name(name):
    """True for a bare file name that stays inside the directory it is joined to."""
    return (bool(name) and name not in (".", "..")
            and "/" not in name and "\\" not in name
            and os.path.basename(name) == name)


def document_path(ctx, file_id):
    """Resolve a document id to the path of an existing stored file."""
    if not _is_flat_name(file_id):
        raise NotFound("The requested document could not be found.")

    path = os.path.join(ctx.documents_path, file_id)
    if not os.path.isfile(path):
        raise NotFound(
            "The requested document could not be found. "
            "It may have been moved or deleted."
        )
    return path


def open_document(ctx, file_id):
    path = document_path(ctx, file_id)
    try:
        ctx.opener(path)
    except (IOError, OSError) as e:
        raise StorageError(f"Failed to open document: {e}") from e
    return path


def clear_documents(ctx):
    """Delete every stored document. Only restore calls this."""
    if not os.path.isdir(ctx.documents_path):
        return 0
    removed = 0
    for name in os.listdir(ctx.documents_path):
        path = os.path.join(ctx.documents_path, name)
        if os.path.isdir(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
        removed += 1
    return removed


# ----------------------------------------------------------------
# BACKUP / RESTORE PIPELINE
# ----------------------------------------------------------------
# Archive layout (ZIP_DEFLATED):
#   data.json            serialized DataSet
#   documents/<fileId>   one entry per document store file
# ----------------------------------------------------------------


def default_backup_name(today=None):
    today = today or date.today()
    return f"rent-manager-backup-{today.isoformat()}.zip"


def create_backup(ctx, data, destination):
    """Package the DataSet and the document store into a zip archive.

    Args:
        data: the DataSet to serialize into data.json
        destination: path chosen by the user, empty if the dialog was dismissed

    Returns:
        str: the archive path
    """
    if not destination:
        raise UserCanceled("Backup canceled by user.")
    if not isinstance(data, dict):
        raise InvalidFormat("Data must be an object holding the entity collections.")

    tmp_path = destination + ".tmp"
    try:
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            archive.writestr(DATA_ENTRY, json.dumps(data, indent=2, ensure_ascii=False))
            if os.path.isdir(ctx.documents_path):
                for name in sorted(os.listdir(ctx.documents_path)):
                    path = os.path.join(ctx.documents_path, name)
                    if os.path.isfile(path):
                        archive.write(path, DOCUMENTS_PREFIX + name)
        os.replace(tmp_path, destination)
    except (IOError, OSError, zipfile.LargeZipFile) as e:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass
        raise StorageError(f"Failed to write backup archive: {e}") from e

    ctx.logger.info("Backup written to %s", destination)
    return destination


def _document_entries(archive):
    """Map archive entry names under documents/ to their store file names."""
    entries = {}
    for info in archive.infolist():
        if not info.filename.startswith(DOCUMENTS_PREFIX) or info.is_dir():
            continue
        name = info.filename[len(DOCUMENTS_PREFIX):]
        if not _is_flat_name(name):
            raise InvalidFormat(f"Invalid document entry in backup: {info.filename}")
        entries[info.filename] = name
    return entries


def _read_backup_data(archive):
    if DATA_ENTRY not in archive.namelist():
        raise InvalidFormat("Invalid backup file format: data.json is missing.")

    try:
        data = json.loads(archive.read(DATA_ENTRY).decode("utf-8"))
    except (ValueError, UnicodeDecodeError, zipfile.BadZipFile) as e:
        raise InvalidFormat(f"Invalid backup file format: {e}") from e

    if (not isinstance(data, dict)
            or not isinstance(data.get("properties"), list)
            or not isinstance(data.get("tenants"), list)):
        raise InvalidFormat("Invalid backup file format.")
    return data


def restore_backup(ctx, source):
    """Read a backup archive and repopulate the document store from it.

    The returned DataSet is NOT written to data.json; the caller saves it.
    Documents are extracted to a staging directory first, so a failed
    extraction leaves the live store as it was.

    Returns:
        dict: the DataSet from the archive's data.json
    """
    if not source:
        raise UserCanceled("Restore canceled by user.")
    if not os.path.isfile(source):
        raise NotFound(f"Backup file not found: {source}")

    try:
        archive = zipfile.ZipFile(source)
    except zipfile.BadZipFile as e:
        raise InvalidFormat("Invalid backup file format.") from e
    except (IOError, OSError) as e:
        raise StorageError(f"Could not open backup file: {e}") from e

    with archive:
        data = _read_backup_data(archive)
        entries = _document_entries(archive)

        staging_path = ctx.documents_path + ".restoring"
        try:
            if os.path.exists(staging_path):
                shutil.rmtree(staging_path)
            os.makedirs(staging_path)
            for entry, name in entries.items():
                with archive.open(entry) as src, open(os.path.join(staging_path, name), "wb") as dst:
                    shutil.copyfileobj(src, dst)
        except (IOError, OSError, zipfile.BadZipFile) as e:
            shutil.rmtree(staging_path, ignore_errors=True)
            raise StorageError(f"Failed to extract documents from backup: {e}") from e

    try:
        os.makedirs(ctx.documents_path, exist_ok=True)
        clear_documents(ctx)
        for name in os.listdir(staging_path):
            os.replace(os.path.join(staging_path, name), os.path.join(ctx.documents_path, name))
        os.rmdir(staging_path)
    except (IOError, OSError) as e:
        shutil.rmtree(staging_path, ignore_errors=True)
        raise StorageError(f"Failed to restore documents: {e}") from e

    ctx.logger.info("Restored %d documents from %s", len(entries), source)
    return data


# ----------------------------------------------------------------
# SCHEDULED BACKUP SWEEP
# ----------------------------------------------------------------


def daily_backup_path(ctx, day):
    return os.path.join(ctx.backups_path, f"data-backup-{day.isoformat()}.json")


def sweep_backups(ctx, now=None):
    """Create today's dated copy of data.json and prune old copies.

    Runs once per start. Never raises: failures are logged only, so a
    broken backups folder cannot block startup.

    Returns:
        str: the path of the backup created by this run, or None
    """
    if not os.path.exists(ctx.data_file_path):
        return None

    now = now or datetime.now()
    created = None

    try:
        os.makedirs(ctx.backups_path, exist_ok=True)
        backup_file_path = daily_backup_path(ctx, now.date())
        if not os.path.exists(backup_file_path):
            shutil.copyfile(ctx.data_file_path, backup_file_path)
            created = backup_file_path
            ctx.logger.info("Successfully created daily backup: %s", backup_file_path)

        cutoff = (now - timedelta(days=ctx.retention_days)).timestamp()
        for name in os.listdir(ctx.backups_path):
            path = os.path.join(ctx.backups_path, name)
            if not os.path.isfile(path):
                continue
            if os.stat(path).st_mtime < cutoff:
                os.remove(path)
                ctx.logger.info("Deleted old backup: %s", name)
    except (IOError, OSError) as e:
        ctx.logger.error("Failed to create or clean up backups: %s", e)

    return created


# ----------------------------------------------------------------
# CONTRACT GENERATION
# ----------------------------------------------------------------
# Templates are DOCX files in the document store with Jinja2 merge
# fields, e.g. {{ tenant_name }}. Rendering is strict: every field the
# template references must be in the mapping built below.
# ----------------------------------------------------------------


def designate_contract_template(ctx, tenant_id, document_id):
    """Make a stored document the contract template of a tenant.

    Returns:
        dict: the updated tenant record
    """
    if not document_id:
        raise InvalidFormat("A document id is required.")

    data = load_data(ctx)
    tenant = _find_by_id(data["tenants"], tenant_id)
    if tenant is None:
        raise NotFound("Tenant not found.")

    tenant["contract_template_id"] = document_id
    save_data(ctx, data)
    return tenant


def _field_text(value):
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_contract_fields(tenant, prop, date_format, today=None):
    """Build the flat merge-field mapping for a tenant's contract.

    A dangling property reference is passed as an empty dict: property
    fields then render empty.
    """
    prop = prop or {}
    today = today or date.today()
    return {
        "tenant_name": _field_text(tenant.get("name")),
        "tenant_id_number": _field_text(tenant.get("id_number")),
        "tenant_phone": _field_text(tenant.get("phone")),
        "tenant_address": _field_text(tenant.get("address")),
        "property_address": _field_text(prop.get("address")),
        "property_type": _field_text(prop.get("property_type")),
        "monthly_rent": _field_text(tenant.get("monthly_rent")),
        "deposit": _field_text(tenant.get("deposit")),
        "rent_due_day": _field_text(tenant.get("rent_due_day")),
        "contract_start_date": _format_date(date_format, tenant.get("contract_start_date")),
        "contract_end_date": _format_date(date_format, tenant.get("contract_end_date")),
        "current_date": _format_date(date_format, today),
    }


def _strict_jinja_env():
    return jinja2.Environment(undefined=jinja2.StrictUndefined, autoescape=True)


def _normalize_docx(payload):
    """Repack a DOCX with fixed entry timestamps so output is reproducible."""
    out = io.BytesIO()
    with zipfile.ZipFile(io.BytesIO(payload)) as src, \
            zipfile.ZipFile(out, "w", compression=zipfile.ZIP_DEFLATED) as dst:
        for item in src.infolist():
            info = zipfile.ZipInfo(item.filename, date_time=FIXED_ZIP_TIMESTAMP)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = item.external_attr
            dst.writestr(info, src.read(item.filename))
    return out.getvalue()


def template_fields(template_path):
    """Collect every merge-field name the template references."""
    try:
        template = DocxTemplate(template_path)
        return set(template.get_undeclared_template_variables(_strict_jinja_env()))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as e:
        raise TemplateError(f"Could not read contract template: {e}") from e
    except jinja2.TemplateSyntaxError as e:
        raise TemplateError(f"Contract template has a syntax error: {e}") from e


def render_contract(template_path, fields):
    """Fill a DOCX template's merge fields.

    Unmapped merge fields are reported all at once before rendering starts.

    Returns:
        bytes: the rendered DOCX
    """
    missing = sorted(template_fields(template_path) - set(fields))
    if missing:
        raise TemplateError(
            "Contract template uses unknown merge fields: " + ", ".join(missing),
            missing_fields=missing,
        )

    try:
        template = DocxTemplate(template_path)
        template.render(fields, _strict_jinja_env())
        buf = io.BytesIO()
        template.save(buf)
    except jinja2.TemplateError as e:
        raise TemplateError(f"Failed to render contract: {e}") from e

    return _normalize_docx(buf.getvalue())


def generate_contract(ctx, tenant_id, destination, today=None):
    """Render a tenant's contract template and write it to destination.

    Returns:
        str: the path written
    """
    data = load_data(ctx)
    tenant = _find_by_id(data["tenants"], tenant_id)
    if tenant is None:
        raise NotFound("Tenant not found.")

    template_id = tenant.get("contract_template_id")
    if not template_id:
        raise NoTemplate("No contract template has been assigned to this tenant.")

    try:
        template_path = document_path(ctx, template_id)
    except NotFound:
        raise NotFound("The contract template file could not be found.")

    prop = _find_by_id(data["properties"], tenant.get("property_id"))
    fields = build_contract_fields(tenant, prop, ctx.date_format, today)
    payload = render_contract(template_path, fields)

    if not destination:
        raise UserCanceled("Contract generation canceled by user.")

    try:
        with open(destination, "wb") as f:
            f.write(payload)
    except (IOError, OSError) as e:
        raise StorageError(f"Failed to save contract: {e}") from e

    ctx.logger.info("Generated contract for tenant %s at %s", tenant_id, destination)
    return destination


# ----------------------------------------------------------------
# NOTIFICATIONS
# ----------------------------------------------------------------


def check_for_notifications(tenants, settings, today=None, date_format="%d/%m/%Y"):
    """Build lease expiry reminders for active tenants.

    A reminder is due when the contract ends within notifyLeaseDays
    days from today (today itself excluded).

    Returns:
        list of {"tenant_id", "title", "body", "days_until_expiry"}
    """
    if settings and not isinstance(settings, dict):
        raise InvalidFormat("Settings must be an object.")
    if tenants and not isinstance(tenants, list):
        raise InvalidFormat("Tenants must be a list.")
    if not settings or not settings.get("notifyLeaseExpiry") or not tenants:
        return []

    try:
        threshold = int(settings.get("notifyLeaseDays", DEFAULT_SETTINGS["notifyLeaseDays"]))
    except (ValueError, TypeError):
        threshold = DEFAULT_SETTINGS["notifyLeaseDays"]

    today = today or date.today()
    notifications = []

    for tenant in tenants:
        if not isinstance(tenant, dict):
            continue
        if not tenant.get("is_active") or not tenant.get("contract_end_date"):
            continue
        end_date = _parse_date(tenant["contract_end_date"])
        if end_date is None:
            continue

        days_until_expiry = (end_date - today).days
        if 0 < days_until_expiry <= threshold:
            notifications.append({
                "tenant_id": tenant.get("id"),
                "title": "Lease Expiry Reminder",
                "body": (
                    f"The lease for {tenant.get('name')} is expiring in "
                    f"{days_until_expiry} days on {_format_date(date_format, end_date)}."
                ),
                "days_until_expiry": days_until_expiry,
            })

    return notifications


# ----------------------------------------------------------------
# CSV IMPORT / HOST INTEGRATION
# ----------------------------------------------------------------


def import_csv(path):
    """Parse a CSV file with a header row into a list of dicts.

    Rows whose cells are all blank are skipped.
    """
    if not path:
        raise UserCanceled("Import canceled by user.")
    if not os.path.isfile(path):
        raise NotFound(f"CSV file not found: {path}")

    try:
        with open(path, newline="", encoding="utf-8-sig") as f:
            reader = csv.DictReader(f)
            rows = list(reader)
    except (IOError, OSError, UnicodeDecodeError, csv.Error) as e:
        raise StorageError(f"Failed to read CSV file: {e}") from e

    return [
        row for row in rows
        if any(str(v).strip() for v in row.values() if v is not None)
    ]


def open_data_folder(ctx):
    try:
        ctx.opener(ctx.user_data_path)
    except (IOError, OSError) as e:
        raise StorageError(f"Failed to open data folder: {e}") from e
    return ctx.user_data_path


def open_external_link(url):
    scheme = urlparse(url or "").scheme.lower()
    if scheme not in ("http", "https", "mailto"):
        raise InvalidFormat("Only http, https and mailto links can be opened.")
    webbrowser.open(url)
    return url


def get_system_theme():
    """Return 'dark' or 'light' from the host's appearance setting."""
    try:
        if sys.platform == "darwin":
            result = subprocess.run(
                ["defaults", "read", "-g", "AppleInterfaceStyle"],
                capture_output=True, text=True, timeout=2,
            )
            return "dark" if "dark" in result.stdout.lower() else "light"

        if sys.platform.startswith("win"):
            import winreg
            key = winreg.OpenKey(
                winreg.HKEY_CURRENT_USER,
                r"Software\Microsoft\Windows\CurrentVersion\Themes\Personalize",
            )
            with key:
                value, _ = winreg.QueryValueEx(key, "AppsUseLightTheme")
            return "light" if value else "dark"

        result = subprocess.run(
            ["gsettings", "get", "org.gnome.desktop.interface", "color-scheme"],
            capture_output=True, text=True, timeout=2,
        )
        return "dark" if "dark" in result.stdout.lower() else "light"
    except (OSError, subprocess.SubprocessError):
        return "light"


# ----------------------------------------------------------------
# SHUTDOWN HANDSHAKE
# ----------------------------------------------------------------
# running -> closing   begin(): ask the UI to save, start the timer
# closing -> closed    acknowledge() or timeout, whichever comes first
# quit_app is called exactly once, with "saved" or "timeout".
# ----------------------------------------------------------------


class ShutdownHandshake:

    def __init__(self, timeout=2.0, logger=None):
        self.timeout = timeout
        self.logger = logger or logging.getLogger("rent_manager")
        self.state = "running"
        self.reason = None
        self._lock = threading.Lock()
        self._timer = None
        self._quit_app = None

    def begin(self, request_save, quit_app):
        with self._lock:
            if self.state != "running":
                return False
            self.state = "closing"
            self._quit_app = quit_app
            self._timer = threading.Timer(self.timeout, self._on_timeout)
            self._timer.daemon = True
            self._timer.start()

        self.logger.info("Window close intercepted. Attempting to save data...")
        request_save()
        return True

    def acknowledge(self, defer=None):
        """Finish the handshake after the UI confirmed its save.

        defer, when given, receives the quit call instead of it running
        here, so a request handler can answer before the process exits.
        """
        if self._finish("saved", defer):
            self.logger.info("Data saved. Proceeding to quit.")
            return True
        return False

    def cancel(self):
        """Stop a pending timer without quitting (used on teardown)."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()

    def _on_timeout(self):
        if self._finish("timeout"):
            self.logger.warning("Renderer did not confirm save, forcing quit.")

    def _finish(self, reason, defer=None):
        with self._lock:
            if self.state != "closing":
                return False
            self.state = "closed"
            self.reason = reason
            if self._timer is not None:
                self._timer.cancel()
            quit_app = self._quit_app

        if defer is not None:
            defer(functools.partial(quit_app, reason))
        else:
            quit_app(reason)
        return True


# ----------------------------------------------------------------
# HTTP BOUNDARY
# ----------------------------------------------------------------
# The presentation layer calls these routes. File dialogs live in the
# presentation layer: the chosen path arrives as "path" in the body,
# and a missing path means the dialog was dismissed.
# ----------------------------------------------------------------

bp = Blueprint("api", __name__, url_prefix="/api")


def _ctx():
    return current_app.extensions["rent_manager"]


def _json_body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


@bp.before_request
def require_json():
    """Refuse state-changing calls that are not sent as JSON.

    A browser page can only send a JSON body cross-origin after a CORS
    preflight, which this app never grants.
    """
    if request.method in ("GET", "HEAD", "OPTIONS") or request.is_json:
        return None
    _ctx().logger.warning("Refused %s %s with content type %r",
                          request.method, request.path, request.content_type)
    return jsonify({"success": False,
                    "error": "Requests must be sent as application/json.",
                    "code": "unsupported_media_type"}), 415


@bp.route("/system-theme", methods=["GET"])
def system_theme_route():
    return jsonify({"success": True, "theme": get_system_theme()})


@bp.route("/open-external-link", methods=["POST"])
def open_external_link_route():
    url = open_external_link(_json_body().get("url"))
    return jsonify({"success": True, "url": url})


@bp.route("/settings", methods=["GET"])
def load_settings_route():
    return jsonify(load_settings(_ctx()))


@bp.route("/settings", methods=["POST"])
def save_settings_route():
    save_settings(_ctx(), request.get_json(silent=True))
    return jsonify({"success": True})


@bp.route("/data", methods=["GET"])
def load_data_route():
    return jsonify(load_data(_ctx()))


@bp.route("/data", methods=["POST"])
def save_data_route():
    save_data(_ctx(), request.get_json(silent=True))
    return jsonify({"success": True})


@bp.route("/backup/default-name", methods=["GET"])
def backup_default_name_route():
    """File name the save dialog should suggest."""
    return jsonify({"success": True, "name": default_backup_name()})


@bp.route("/backup", methods=["POST"])
def backup_route():
    ctx = _ctx()
    body = _json_body()
    data = body.get("data")
    if data is None:
        data = load_data(ctx)
    path = create_backup(ctx, data, body.get("path"))
    return jsonify({"success": True, "path": path})


@bp.route("/restore", methods=["POST"])
def restore_route():
    data = restore_backup(_ctx(), _json_body().get("path"))
    return jsonify({"success": True, "data": data})


@bp.route("/open-data-folder", methods=["POST"])
def open_data_folder_route():
    path = open_data_folder(_ctx())
    return jsonify({"success": True, "path": path})


@bp.route("/documents", methods=["POST"])
def upload_document_route():
    result = store_document(_ctx(), _json_body().get("path"))
    return jsonify({"success": True, **result})


@bp.route("/documents/<file_id>", methods=["GET"])
def view_document_route(file_id):
    """Serve a stored document back to the caller."""
    ctx = _ctx()
    document_path(ctx, file_id)
    return send_from_directory(ctx.documents_path, file_id)


@bp.route("/documents/<file_id>/open", methods=["POST"])
def open_document_route(file_id):
    open_document(_ctx(), file_id)
    return jsonify({"success": True})


@bp.route("/import-csv", methods=["POST"])
def import_csv_route():
    body = _json_body()
    rows = import_csv(body.get("path"))
    return jsonify({"success": True, "type": body.get("type"), "data": rows})


@bp.route("/notifications", methods=["POST"])
def notifications_route():
    """Lease expiry reminders; tenants/settings default to the stored ones."""
    ctx = _ctx()
    body = _json_body()
    tenants = body.get("tenants")
    if tenants is None:
        tenants = load_data(ctx)["tenants"]
    settings = body.get("settings")
    if settings is None:
        settings = load_settings(ctx)
    notifications = check_for_notifications(tenants, settings, date_format=ctx.date_format)
    return jsonify({"success": True, "notifications": notifications})


@bp.route("/tenants/<tenant_id>/contract-template", methods=["POST"])
def designate_template_route(tenant_id):
    tenant = designate_contract_template(_ctx(), tenant_id, _json_body().get("document_id"))
    return jsonify({"success": True, "tenant": tenant})


@bp.route("/tenants/<tenant_id>/contract", methods=["POST"])
def generate_contract_route(tenant_id):
    path = generate_contract(_ctx(), tenant_id, _json_body().get("path"))
    return jsonify({"success": True, "path": path})


@bp.route("/app/close", methods=["POST"])
def close_route():
    ctx = _ctx()
    quit_app = current_app.config["ON_QUIT"]

    def _quit(reason):
        ctx.close()
        quit_app(reason)

    started = ctx.handshake.begin(lambda: None, _quit)
    return jsonify({"success": True, "action": "save-data" if started else None,
                    "state": ctx.handshake.state})


@bp.route("/app/data-saved", methods=["POST"])
def data_saved_route():
    ctx = _ctx()
    pending = []
    acknowledged = ctx.handshake.acknowledge(defer=pending.append)
    response = jsonify({"success": acknowledged, "state": ctx.handshake.state})
    # Quit only once the acknowledgement has been sent
    for quit_app in pending:
        response.call_on_close(quit_app)
    return response


def register_error_handlers(app):
    @app.errorhandler(RentManagerError)
    def handle_rent_manager_error(e):
        if isinstance(e, UserCanceled):
            app.logger.info("%s", e.message)
        elif isinstance(e, (StorageError, TemplateError)):
            app.logger.error("%s: %s", e.code, e.message, exc_info=e.__cause__)
        else:
            app.logger.warning("%s: %s", e.code, e.message)

        body = {"success": False, "error": e.message, "code": e.code}
        if isinstance(e, TemplateError) and e.missing_fields:
            body["missing_fields"] = e.missing_fields
        return jsonify(body), e.status

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({"success": False, "error": e.description,
                        "code": (e.name or "error").lower().replace(" ", "_")}), e.code

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"success": False, "error": "Internal server error.",
                        "code": "server_error"}), 500


def _default_quit(reason):
    """Stop the process once the shutdown handshake completes."""
    logging.getLogger("rent_manager").info("Quitting (%s)", reason)
    os._exit(0)


def create_app(user_data_path=None, opener=None, on_quit=None, run_sweep=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if user_data_path:
        app.config["USER_DATA_PATH"] = user_data_path
    if run_sweep is not None:
        app.config["RUN_BACKUP_SWEEP"] = run_sweep
    app.config["ON_QUIT"] = on_quit or _default_quit

    ctx = AppContext(
        app.config["USER_DATA_PATH"],
        date_format=app.config["DATE_FORMAT"],
        retention_days=app.config["BACKUP_RETENTION_DAYS"],
        shutdown_timeout=app.config["SHUTDOWN_TIMEOUT"],
        opener=opener,
        logger=app.logger,
    )
    ctx.ensure_dirs()
    ctx.attach_file_log()
    app.extensions["rent_manager"] = ctx

    app.register_blueprint(bp)
    register_error_handlers(app)

    app.logger.info("App starting...")
    if app.config["RUN_BACKUP_SWEEP"]:
        sweep_backups(ctx)

    return app


if __name__ == "__main__":
    # Local only; the desktop shell talks to this on localhost
    create_app().run(port=5000)
