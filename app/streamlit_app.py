from dotenv import load_dotenv
load_dotenv()

import atexit
import sys
import uuid
from pathlib import Path
from typing import List, Optional

import pandas as pd
import streamlit as st

# Ensure repo root is on sys.path for "labsupply" imports
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.backend.runner import BackgroundController, ControllerRegistry
from labsupply.config import get_settings
from labsupply.errors import ConfigurationError, IntakeError, NothingToExportError
from labsupply.export import EXPORT_COLUMNS, XLSX_MIME_TYPE, build_rows, export_workbook
from labsupply.intake import ALLOWED_EXTENSIONS, build_upload
from labsupply.logger import get_logger
from labsupply.models import ImageUpload, ItemStatus, WorkItem

logger = get_logger("labsupply.app.streamlit")

# ============================================================================
# Constants
# ============================================================================
REFRESH_SECONDS = 1.0
NOT_FOUND = "N/A"
STATUS_LABELS = {
    ItemStatus.QUEUED: "⏳ Queued",
    ItemStatus.LOADING: "🔄 Extracting…",
    ItemStatus.DONE: "✅ Done",
    ItemStatus.ERROR: "❌ Failed",
}

st.set_page_config(page_title="Lab Supply OCR & Exporter", layout="wide")

# ============================================================================
# Configuration (fatal when the credential is missing)
# ============================================================================
try:
    settings = get_settings()
except ConfigurationError as exc:
    logger.error("Startup aborted: %s", exc)
    st.error(f"Configuration error: {exc}")
    st.stop()


def get_safe_settings_display() -> dict:
    """Settings for the sidebar, with the API key masked."""
    return {
        "OPENAI_VISION_MODEL": settings.OPENAI_VISION_MODEL,
        "OPENAI_BASE_URL": settings.OPENAI_BASE_URL,
        "OPENAI_API_KEY": "***hidden***" if settings.OPENAI_API_KEY else "not set",
        "CONCURRENCY_LIMIT": settings.CONCURRENCY_LIMIT,
        "PAUSE_THRESHOLD": settings.PAUSE_THRESHOLD,
        "PAUSE_DURATION": settings.PAUSE_DURATION,
        "EXTRACTION_TIMEOUT": settings.EXTRACTION_TIMEOUT,
    }


# ============================================================================
# Session State Initialization
# ============================================================================

@st.cache_resource
def get_registry() -> ControllerRegistry:
    """One event loop thread per process, shared by every browser session."""
    registry = ControllerRegistry(settings, idle_seconds=settings.SESSION_IDLE_SECONDS)
    atexit.register(registry.shutdown)
    return registry


def init_session_state():
    """Initialize all session state variables."""
    defaults = {
        "session_key": None,
        "seen_upload_ids": set(),
        "uploader_key": 0,
        "export_bytes": None,
    }
    for key, default_value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = default_value

    if st.session_state.session_key is None:
        st.session_state.session_key = uuid.uuid4().hex


def get_controller() -> BackgroundController:
    """This session's controller; also marks the session as active."""
    return get_registry().get(st.session_state.session_key)


init_session_state()
get_registry().reap_idle()
controller = get_controller()


# ============================================================================
# Helper Functions
# ============================================================================

def intake_uploaded_files(uploaded_files) -> None:
    """Queue every newly uploaded file once; report rejected files inline."""
    uploads: List[ImageUpload] = []
    for uploaded_file in uploaded_files:
        if uploaded_file.file_id in st.session_state.seen_upload_ids:
            continue
        st.session_state.seen_upload_ids.add(uploaded_file.file_id)
        try:
            uploads.append(build_upload(
                uploaded_file.name,
                uploaded_file.getvalue(),
                declared_type=uploaded_file.type,
                max_size_mb=settings.MAX_IMAGE_SIZE_MB,
            ))
        except IntakeError as e:
            st.error(f"❌ {e}")

    if uploads:
        controller.submit(uploads)
        st.session_state.export_bytes = None
        st.toast(f"Queued {len(uploads)} image(s)")


def display_value(value: Optional[str]) -> str:
    return value or NOT_FOUND


@st.dialog("Image preview", width="large")
def show_preview(item: WorkItem) -> None:
    st.image(item.image.data, caption=item.filename, width="stretch")


def render_status_bar(controller: BackgroundController) -> None:
    status = controller.status()
    if status.paused:
        st.warning(
            f"⏸️ Rate-limit cooldown: resuming in {status.countdown}s "
            f"({status.queued} image(s) waiting)"
        )
    elif status.in_flight or status.queued:
        st.info(f"Extracting {status.in_flight} image(s), {status.queued} queued")

    cols = st.columns(4)
    cols[0].metric("Queued", status.queued)
    cols[1].metric("In progress", status.loading)
    cols[2].metric("Done", status.done)
    cols[3].metric("Failed", status.error)


def render_item_row(item: WorkItem, controller: BackgroundController) -> None:
    cols = st.columns([1, 3, 2, 2, 2, 1])
    with cols[0]:
        st.image(item.image.data, width=80)
        if st.button("🔍", key=f"preview_{item.id}", help="Preview image"):
            show_preview(item)

    if item.status == ItemStatus.DONE and item.extracted is not None:
        fields = item.extracted
        cols[1].write(f"**{display_value(fields.product_name)}**  \n{item.filename}")
        cols[2].write(display_value(fields.ref_number))
        cols[3].write(display_value(fields.lot_number))
        cols[4].write(display_value(fields.expiration_date))
    elif item.status == ItemStatus.ERROR:
        cols[1].error(f"Failed to extract {item.filename}: {item.error_message}")
    else:
        cols[1].write(f"{STATUS_LABELS[item.status]}  \n{item.filename}")

    if cols[5].button("🗑️", key=f"delete_{item.id}", help="Remove this image"):
        controller.delete(item.id)
        st.session_state.export_bytes = None
        st.rerun(scope="fragment")


@st.fragment(run_every=REFRESH_SECONDS)
def render_results() -> None:
    # Each refresh keeps this session from being reaped
    controller = get_controller()
    render_status_bar(controller)

    items = controller.snapshot()
    if not items:
        st.info("Your processed images will appear here.")
        return

    header = st.columns([1, 3, 2, 2, 2, 1])
    for col, title in zip(header, ["Image", "Product Name", "REF #", "LOT #", "Expires", ""]):
        col.markdown(f"**{title}**")
    for item in items:
        render_item_row(item, controller)


# ============================================================================
# Layout
# ============================================================================

st.title("Lab Supply OCR & Exporter")
st.caption("Upload images of lab supply boxes to extract info and export to Excel.")

with st.sidebar:
    st.header("Settings")
    st.json(get_safe_settings_display())
    usage_note = (
        f"At most {settings.CONCURRENCY_LIMIT} request(s) run at once; "
        f"after every {settings.PAUSE_THRESHOLD} requests the queue pauses "
        f"for {settings.PAUSE_DURATION}s."
    )
    st.caption(usage_note)

uploaded_files = st.file_uploader(
    "Drag & drop files or click to browse",
    type=[ext.lstrip(".") for ext in ALLOWED_EXTENSIONS],
    accept_multiple_files=True,
    key=f"file_uploader_{st.session_state.uploader_key}",
    help=f"Images up to {settings.MAX_IMAGE_SIZE_MB}MB each",
)
if uploaded_files:
    intake_uploaded_files(uploaded_files)

export_col, clear_col = st.columns([1, 1])
with export_col:
    if st.button("Export to Excel", type="primary", width="stretch"):
        try:
            st.session_state.export_bytes = export_workbook(
                controller.snapshot(),
                sheet_name=settings.EXPORT_SHEET_NAME,
            )
        except NothingToExportError as e:
            st.session_state.export_bytes = None
            st.warning(str(e))
    if st.session_state.export_bytes:
        st.download_button(
            label=f"Download {settings.EXPORT_FILENAME}",
            data=st.session_state.export_bytes,
            file_name=settings.EXPORT_FILENAME,
            mime=XLSX_MIME_TYPE,
            width="stretch",
        )
with clear_col:
    if st.button("Reset uploader", width="stretch", help="Clear the file picker; queued images stay"):
        st.session_state.uploader_key += 1
        st.rerun()

export_rows = build_rows(controller.snapshot())
if export_rows:
    with st.expander(f"Preview export ({len(export_rows)} row(s))"):
        st.dataframe(
            pd.DataFrame(export_rows, columns=list(EXPORT_COLUMNS)),
            width="stretch",
            hide_index=True,
        )

render_results()
