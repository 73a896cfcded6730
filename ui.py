#!/usr/bin/env python3
"""
Invoice Processor UI - Streamlit control panel for the folder watcher

Run with: streamlit run ui.py

Workflow:
1. Pick the scan folder, the organized folder and enter your OpenAI API key
2. Press Start; new scans are renamed and moved automatically
3. Watch the queue, processed files and API cost update live
"""

from pathlib import Path

import streamlit as st

from invoice_processor import CONFIG, ProcessorController, add_file_handler
from settings import get_settings

# Page config
st.set_page_config(
    page_title="Invoice Processor",
    page_icon=":material/receipt_long:",
    layout="wide",
)

OUTCOME_LABELS = {
    "renamed": "Renamed",
    "degraded": "Renamed (Unknown)",
    "quarantined": "Failed",
    "failed": "Failed (left in place)",
}


@st.cache_resource
def get_controller() -> ProcessorController:
    """One controller per server process, shared across browser sessions."""
    if CONFIG["logging"]["dir"]:
        add_file_handler(CONFIG["logging"]["dir"])
    controller = ProcessorController()
    controller.configure(**get_settings().controller_values())
    return controller


# ==============================================================================
# SIDEBAR: SETTINGS
# ==============================================================================

def render_settings_form(controller: ProcessorController) -> None:
    """Folder/API key form. Saved values apply on the next Start."""
    settings = get_settings()

    with st.sidebar:
        st.subheader(":material/settings: Settings")
        with st.form("settings_form"):
            watch_folder = st.text_input(
                "Scan Folder",
                value=settings.watch_folder,
                placeholder=str(Path.home() / "Documents" / "Invoices" / "Scans"),
                help="Folder your scanner saves into",
            )
            output_folder = st.text_input(
                "Organized Folder",
                value=settings.output_folder,
                placeholder=str(Path.home() / "Documents" / "Invoices" / "Processed"),
                help="Renamed invoices are moved here",
            )
            api_key = st.text_input(
                "OpenAI API Key",
                type="password",
                placeholder="********" if settings.openai_api_key else "sk-...",
                help="Leave empty to keep the saved key",
            )
            blocked_terms = st.text_input(
                "Blocked Terms",
                value=settings.blocked_terms,
                placeholder="statement, receipt",
                help="Comma-separated. Files whose names contain any term are skipped.",
            )
            model = st.text_input(
                "Model",
                value=settings.openai_model,
                placeholder="gpt-4o",
                help="OpenAI vision model used to read invoices",
            )
            submitted = st.form_submit_button("Save", type="primary", use_container_width=True)

        if submitted:
            updates = {
                "watch_folder": watch_folder.strip(),
                "output_folder": output_folder.strip(),
                "blocked_terms": blocked_terms.strip(),
                "openai_model": model.strip(),
            }
            if api_key.strip():
                updates["openai_api_key"] = api_key.strip()
            settings.update(updates)

            controller.configure(**settings.controller_values())
            valid, errors = settings.validate_directories()
            if valid:
                st.success("Settings saved")
            else:
                for error in errors:
                    st.warning(error)
            if controller.running:
                st.info("Stop and start again to apply the new settings.")


# ==============================================================================
# STATUS PANEL
# ==============================================================================

@st.fragment(run_every="5s")
def render_status(controller: ProcessorController) -> None:
    """Live status, refreshed every few seconds."""
    status = controller.status()

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("Status", status["status"])
    with col2:
        st.metric("Queued", len(status["queue"]))
    with col3:
        st.metric("API Queries", status["total_queries"])
    with col4:
        st.metric("API Cost", f"${status['total_cost']:.4f}")

    if status.get("current_file"):
        st.caption(f"Examining `{status['current_file']}`")

    if status["queue"]:
        st.markdown("**Queue**")
        for path in status["queue"]:
            st.text(Path(path).name)

    st.markdown("**Processed**")
    processed = status["processed"]
    if not processed:
        st.caption("No files processed yet.")
        return

    rows = [
        {
            "Time": entry["processed_at"],
            "File": entry["file"],
            "Result": OUTCOME_LABELS.get(entry["outcome"], entry["outcome"]),
            "Saved As": Path(entry["destination"]).name if entry["destination"] else "",
            "Error": entry["error"] or "",
        }
        for entry in reversed(processed)
    ]
    st.dataframe(rows, use_container_width=True, hide_index=True)


# ==============================================================================
# MAIN PAGE
# ==============================================================================

def main():
    controller = get_controller()

    st.title(":material/receipt_long: Invoice Processor")
    render_settings_form(controller)

    status = controller.status()
    st.caption(
        f"Scan folder: `{status['watch_folder'] or 'not set'}` · "
        f"Organized folder: `{status['output_folder'] or 'not set'}` · "
        f"API key: `{status['api_key'] or 'not set'}`"
    )

    col_start, col_stop, _ = st.columns([1, 1, 4])
    with col_start:
        if st.button("Start", type="primary", use_container_width=True, disabled=controller.running):
            result = controller.start()
            if result["success"]:
                st.toast(result["message"])
            else:
                st.error(result["message"])
    with col_stop:
        if st.button("Stop", use_container_width=True, disabled=not controller.running):
            with st.spinner("Finishing current file..."):
                result = controller.stop()
            st.toast(result["message"])

    st.divider()
    render_status(controller)

    with st.expander("How it works", expanded=False):
        st.markdown("""
        - Each new PNG, JPG or PDF in the scan folder is sent to the vision model
          (PDFs are converted from their first page).
        - Files are moved to the organized folder as
          `YYYY-MM-DD_Company_InvoiceNumber.ext`.
        - Files that cannot be processed are copied there as `FAILED_<name>`.
        - Identical scans are recognized by content and never analyzed twice.
        - Files whose names contain a blocked term are left untouched.
        """)


if __name__ == "__main__":
    main()
