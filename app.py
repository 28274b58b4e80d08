from __future__ import annotations

import threading
import time
from datetime import datetime

import pandas as pd
import streamlit as st

from record_fetcher.artifact import build_result_csv
from record_fetcher.config import MAX_CONCURRENCY, load_config, validate_runtime
from record_fetcher.errors import RecordFetcherError
from record_fetcher.input_parser import (
    parse_rate_limit,
    parse_record_info,
    parse_segments,
    parse_segments_csv,
    parse_selection,
    sanitize_filename,
)
from record_fetcher.models import Job, JobResult, ProgressEvent
from record_fetcher.runner import process_job


def _format_amount(value: float, unit: str) -> str:
    if unit == "seconds":
        return time.strftime("%H:%M:%S", time.gmtime(max(value, 0)))
    return f"{value / 1024 / 1024:.1f} MiB"


st.set_page_config(page_title="直播回放下载工具", layout="wide")
st.title("直播回放分段下载 / 解包 / 合并")

config = load_config()

st.caption(
    "当前配置: "
    f"ffmpeg={config.tools.ffmpeg} | "
    f"ffprobe={config.tools.ffprobe} | "
    f"output_dir={config.output_dir} | "
    f"remux_timeout_sec={config.remux_timeout_sec} | "
    f"segment_tolerance_sec={config.segment_tolerance_sec}"
)

runtime_errors = validate_runtime(config)
if runtime_errors:
    st.error("运行前置检查未通过：\n- " + "\n- ".join(runtime_errors))

with st.expander("输入说明", expanded=False):
    st.markdown(
        "\n".join(
            [
                "- 分段列表为 JSON 数组，每项包含 `url`、`size`（字节）、`duration`（毫秒），可选 `backup_url`",
                "- 也可上传 CSV，表头为 `url,size,duration[,backup_url]`；文本框有内容时忽略上传文件",
                "- 选择分段：输入 `all`，或用英文逗号分隔的序号（从 1 开始）",
                "- 只有选择全部分段且全部成功时，才会合并为单个 MP4 或生成 m3u8 播放列表",
                "- 限速示例：`512KB`、`1MiB`、`2M`，留空表示不限速",
            ]
        )
    )

info_col, option_col = st.columns(2)
with info_col:
    record_id = st.text_input("直播回放 ID")
    title = st.text_input("直播标题")
    quality = st.text_input("画质", value="原画")
    start_timestamp = st.text_input("开始时间（Unix 时间戳，可选）")
with option_col:
    selection_text = st.text_input("要下载的分段", value="all")
    concurrency = st.number_input(
        "下载并发数",
        min_value=1,
        max_value=MAX_CONCURRENCY,
        value=min(max(config.concurrency, 1), MAX_CONCURRENCY),
    )
    rate_text = st.text_input("下载限速（每秒）", value="")
    merge = st.checkbox("合并为单个 MP4（取消则生成 m3u8 播放列表）", value=True)

segments_text = st.text_area(
    "分段列表（JSON）",
    height=220,
    placeholder='[{"url": "https://example.com/part1.flv", "size": 1048576, "duration": 60000}]',
)
uploaded_file = st.file_uploader("可选文件上传（CSV: url,size,duration）", type=["csv"])

if "rf_result" not in st.session_state:
    st.session_state["rf_result"] = None
if "rf_logs" not in st.session_state:
    st.session_state["rf_logs"] = []

start_clicked = st.button("开始下载", type="primary", disabled=bool(runtime_errors))

if start_clicked:
    st.session_state["rf_result"] = None
    st.session_state["rf_logs"] = []

    if segments_text.strip():
        segments, failures = parse_segments(segments_text)
    elif uploaded_file is not None:
        segments, failures = parse_segments_csv(uploaded_file.getvalue())
    else:
        segments, failures = [], []

    try:
        record = parse_record_info(
            {
                "rid": record_id,
                "title": title,
                "quality": quality,
                "start_timestamp": start_timestamp,
            }
        )
        selection = parse_selection(selection_text)
        rate_limit = parse_rate_limit(rate_text)
    except (ValueError, RecordFetcherError) as exc:
        st.error(str(exc))
        st.stop()

    if failures:
        st.error("分段列表有误：\n- " + "\n- ".join(f"#{item.index}: {item.error}" for item in failures))
        st.stop()
    if not segments:
        st.warning("请输入至少一个分段。")
        st.stop()

    output_dir = config.output_dir / sanitize_filename(f"{title}-{record.record_id}", record.record_id)
    job = Job(
        record=record,
        segments=tuple(segments),
        selection=selection,
        output_dir=output_dir,
        concurrency=int(concurrency),
        rate_limit_bps=rate_limit,
        merge=merge,
    )

    lock = threading.Lock()
    logs: list[str] = []
    latest: dict[str, ProgressEvent] = {}
    outcome: dict[str, object] = {}

    def log_cb(message: str) -> None:
        ts = datetime.now().strftime("%H:%M:%S")
        with lock:
            logs.append(f"[{ts}] {message}")

    def progress_cb(event: ProgressEvent) -> None:
        with lock:
            latest[event.label] = event

    def worker() -> None:
        try:
            outcome["result"] = process_job(job, config, log_cb=log_cb, progress_cb=progress_cb)
        except (RecordFetcherError, OSError) as exc:
            outcome["error"] = exc

    # worker 线程无法直接更新页面，由主线程轮询渲染
    thread = threading.Thread(target=worker, daemon=True)
    thread.start()

    progress_box = st.empty()
    log_box = st.empty()
    while True:
        alive = thread.is_alive()
        with lock:
            rows = [
                {
                    "分段": event.label,
                    "步骤": event.step,
                    "文件": event.filename,
                    "进度": f"{_format_amount(event.current, event.unit)} / {_format_amount(event.total, event.unit)}",
                }
                for event in latest.values()
            ]
            log_text = "\n".join(logs[-200:])
        if rows:
            progress_box.dataframe(pd.DataFrame(rows), use_container_width=True)
        log_box.code(log_text or "(无日志)")
        if not alive:
            break
        time.sleep(0.5)

    st.session_state["rf_logs"] = logs
    if "error" in outcome:
        st.error(f"任务失败：{outcome['error']}")
    st.session_state["rf_result"] = outcome.get("result")

if st.session_state.get("rf_result") is not None:
    result: JobResult = st.session_state["rf_result"]

    if result.skipped_existing:
        st.success(f"完整回放文件已存在：{result.merged_path}")
    if result.merged_path and not result.skipped_existing:
        st.success(f"已合并：{result.merged_path}")
    if result.manifest_path:
        st.success(f"已生成播放列表：{result.manifest_path}")

    st.subheader("结果表")
    table_rows = [
        {
            "index": item.index,
            "status": "SUCCESS" if item.succeeded else "FAILED",
            "output_path": str(item.output_path or ""),
            "error": item.reason,
        }
        for item in result.report.outcomes
    ]
    st.dataframe(pd.DataFrame(table_rows), use_container_width=True)

    st.subheader("日志")
    logs = st.session_state.get("rf_logs", [])
    st.code("\n".join(logs[-500:]) if logs else "(无日志)")

    st.download_button(
        label="下载结果：result.csv",
        data=build_result_csv(result.report),
        file_name="result.csv",
        mime="text/csv",
    )
