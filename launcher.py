#!/usr/bin/env python3
"""
直播回放下载工具启动器
用于在打包的 macOS .app 中启动 Streamlit 应用

核心原理：
- PyInstaller 打包后，sys.executable 指向冻结二进制，不能当 Python 用
- 所以不能用 subprocess 调用 `python -m streamlit`
- 正确做法是直接在进程内调用 Streamlit 的 CLI 入口
"""
import os
import sys
import threading
import time
import webbrowser
from pathlib import Path


def _get_base_path() -> Path:
    """获取资源根目录（兼容 PyInstaller 打包环境和开发环境）"""
    if getattr(sys, "frozen", False):
        return Path(sys._MEIPASS)
    return Path(__file__).parent


def _setup_environment(base_path: Path) -> None:
    """设置运行环境"""
    # 打包目录中自带 ffmpeg / ffprobe 时优先使用
    for env_name, binary in (("RF_FFMPEG_BIN", "ffmpeg"), ("RF_FFPROBE_BIN", "ffprobe")):
        bundled = base_path / binary
        if bundled.is_file() and env_name not in os.environ:
            os.environ[env_name] = str(bundled)

    # 打包后的工作目录不可写，默认下载到用户目录
    if getattr(sys, "frozen", False) and "RF_OUTPUT_DIR" not in os.environ:
        os.environ["RF_OUTPUT_DIR"] = str(Path.home() / "Movies" / "record_fetcher")


def _open_browser_later(url: str, delay: float = 4.0) -> None:
    """后台线程延迟打开浏览器"""
    def _open():
        time.sleep(delay)
        webbrowser.open(url)
    threading.Thread(target=_open, daemon=True).start()


def main() -> None:
    base_path = _get_base_path()
    _setup_environment(base_path)

    app_script = str(base_path / "app.py")
    if not Path(app_script).exists():
        print(f"错误：找不到应用入口 {app_script}")
        sys.exit(1)

    port = os.environ.get("RF_PORT", "8501")

    _open_browser_later(f"http://localhost:{port}")

    sys.argv = [
        "streamlit", "run", app_script,
        "--server.port", port,
        "--server.headless", "true",
        "--server.fileWatcherType", "none",
        "--browser.gatherUsageStats", "false",
        "--global.developmentMode", "false",
    ]

    from streamlit.web.cli import main as st_main  # noqa: E402
    st_main()


if __name__ == "__main__":
    main()
