import io
import os
import time

import requests
import streamlit as st

API_BASE = os.getenv("DOC_SERVICE_API_BASE", os.getenv("API_BASE", "http://localhost:8080")).rstrip("/")
POLL_INTERVAL = float(os.getenv("DOC_SERVICE_UI_POLL_INTERVAL", "1.5"))
TERMINAL = {"completed", "degraded", "failed", "cancelled"}
READY = {"completed", "degraded"}


def _reset_state():
    for key in [
        "operation_id",
        "status",
        "progress",
        "result_text",
        "error",
        "warning",
    ]:
        if key in st.session_state:
            del st.session_state[key]
    # Bump the uploader key to clear any previously uploaded file widget state
    if "upload_key" in st.session_state:
        st.session_state["upload_key"] += 1
    else:
        st.session_state["upload_key"] = 1


def _get_with_retry(path: str, *, timeout: int = 30) -> requests.Response | None:
    """GET with a short backoff window for transient network and 5xx errors."""
    max_attempts = 5
    backoff = 0.5
    last_text = ""
    for attempt in range(1, max_attempts + 1):
        try:
            resp = requests.get(f"{API_BASE}{path}", timeout=timeout)
        except Exception as e:
            last_text = str(e)
            if attempt < max_attempts:
                time.sleep(backoff)
                backoff *= 1.5
                continue
            st.session_state["error"] = f"Request to {path} failed: {e}"
            return None
        last_text = resp.text
        if resp.status_code == 429 or 500 <= resp.status_code < 600:
            if attempt < max_attempts:
                time.sleep(backoff)
                backoff *= 1.5
                continue
        return resp
    st.session_state["error"] = f"Request to {path} failed after retries: {last_text}"
    return None


def _start_operation(uploaded_file: io.BytesIO, target_format: str, priority: int) -> str | None:
    try:
        files = {"file": (uploaded_file.name, uploaded_file.getvalue(), uploaded_file.type or "application/octet-stream")}
        data = {"target_format": target_format, "priority": str(priority)}
        resp = requests.post(f"{API_BASE}/operations", files=files, data=data, timeout=60)
    except Exception as e:
        st.session_state["error"] = f"Failed to connect to API: {e}"
        return None
    if resp.status_code not in (200, 202):
        st.session_state["error"] = f"Upload failed: {resp.status_code} {resp.text}"
        return None
    return str(resp.json().get("id"))


def _poll_status(operation_id: str) -> dict[str, object] | None:
    resp = _get_with_retry(f"/operations/{operation_id}")
    if resp is None:
        return None
    if resp.status_code != 200:
        st.session_state["error"] = f"Status error: {resp.status_code} {resp.text}"
        return None
    return resp.json()


def _download_result(operation_id: str) -> str | None:
    resp = _get_with_retry(f"/operations/{operation_id}/result", timeout=60)
    if resp is None:
        return None
    if resp.status_code != 200:
        st.session_state["error"] = f"Download error: {resp.status_code} {resp.text}"
        return None
    return resp.text


def _cancel(operation_id: str) -> None:
    try:
        requests.delete(f"{API_BASE}/operations/{operation_id}", timeout=30)
    except Exception as e:
        st.session_state["error"] = f"Cancel failed: {e}"


def _queue_sidebar() -> None:
    st.sidebar.header("Queue")
    resp = _get_with_retry("/queue/stats", timeout=10)
    if resp is None or resp.status_code != 200:
        st.sidebar.caption("Queue statistics unavailable")
        return
    stats = resp.json()
    st.sidebar.metric("Memory band", str(stats.get("memory_band", "?")))
    st.sidebar.metric("Active / max", f"{stats.get('active_jobs', 0)} / {stats.get('max_concurrency', 0)}")
    st.sidebar.metric("Queued jobs", int(stats.get("queued_jobs", 0)))
    wait_ms = int(stats.get("estimated_wait_ms", 0))
    st.sidebar.caption(f"Estimated wait: {wait_ms / 1000:.1f}s")
    if stats.get("paused"):
        st.sidebar.warning("Admission paused")


def main() -> None:
    st.set_page_config(page_title="Document Conversion Scheduler", page_icon="📄", layout="centered")
    st.title("📄 Document Conversion Scheduler")
    st.caption(f"API base: {API_BASE}")
    _queue_sidebar()

    col1, col2 = st.columns([1, 1])
    with col1:
        if st.button("Restart", type="secondary"):
            _reset_state()
            st.rerun()
    with col2:
        if "operation_id" in st.session_state and st.session_state.get("status") not in TERMINAL:
            if st.button("Cancel"):
                _cancel(st.session_state["operation_id"])

    # Use a dynamic key so that restarting bumps the key and clears the previous upload
    if "upload_key" not in st.session_state:
        st.session_state["upload_key"] = 0
    uploaded = st.file_uploader(
        "Upload a document (PDF, DOCX, PPTX, etc.)",
        type=["pdf", "docx", "pptx", "xlsx", "html", "png", "jpg"],  # type: ignore[arg-type]
        key=f"uploader-{st.session_state['upload_key']}",
    )
    priority = st.slider("Priority", min_value=1, max_value=10, value=5)

    if uploaded and "operation_id" not in st.session_state and st.button("Start Conversion", type="primary"):
        with st.spinner("Uploading and creating operation..."):
            op_id = _start_operation(uploaded, "md", priority)
        if op_id:
            st.session_state["operation_id"] = op_id
            st.session_state["status"] = "queued"
            st.session_state["progress"] = 0
            st.toast("Operation created", icon="✅")
        else:
            st.error(st.session_state.get("error", "Unknown error"))

    if "operation_id" in st.session_state:
        op_id = st.session_state["operation_id"]
        with st.status("Tracking operation...", expanded=True) as status_box:
            text_slot = st.empty()
            chunk_slot = st.empty()
            prog_slot = st.empty()
            while True:
                data = _poll_status(op_id)
                if not data:
                    st.error(st.session_state.get("error", "Status error"))
                    break
                st.session_state["status"] = str(data.get("status", "unknown"))
                st.session_state["progress"] = int(data.get("progress_percent", 0))

                status_line = f"Status: {st.session_state['status']}"
                if data.get("queue_position"):
                    wait_s = int(data.get("queue_wait_ms") or 0) // 1000
                    status_line += f" (queue position {data['queue_position']}, ~{wait_s}s wait)"
                text_slot.write(status_line)
                chunks = data.get("chunks") or {}
                if chunks.get("total"):
                    chunk_slot.caption(
                        f"Chunks: {chunks.get('completed', 0)} done, {chunks.get('failed', 0)} failed of {chunks['total']}"
                    )
                prog_slot.progress(min(max(st.session_state["progress"], 0), 100))

                if st.session_state["status"] in READY:
                    if data.get("error_message"):
                        st.session_state["warning"] = str(data["error_message"])
                    status_box.update(label="Operation completed", state="complete")
                    break
                if st.session_state["status"] in TERMINAL:
                    st.session_state["error"] = f"{data.get('error_kind') or 'Stopped'}: {data.get('error_message') or st.session_state['status']}"
                    status_box.update(label=f"Operation {st.session_state['status']}", state="error")
                    break
                time.sleep(POLL_INTERVAL)

        if st.session_state.get("status") in READY and "result_text" not in st.session_state:
            with st.spinner("Fetching result..."):
                text = _download_result(op_id)
            if text is not None:
                st.session_state["result_text"] = text

    if "result_text" in st.session_state:
        st.success("Conversion complete!")
        if warn := st.session_state.get("warning"):
            st.warning(warn)
        md = st.session_state["result_text"]
        st.download_button(
            label="Download Markdown",
            data=md.encode("utf-8"),
            file_name="conversion.md",
            mime="text/markdown",
        )
        with st.expander("Preview"):
            st.markdown(md)

    if err := st.session_state.get("error"):
        st.error(err)


if __name__ == "__main__":
    main()
