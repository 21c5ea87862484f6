"""
日志配置

- 控制台：一行一条，同步上下文（IB / 账号）附在消息后面
- 文件：logs/app.log（DEBUG+）、logs/error.log（WARNING+），JSON 一行一条，10MB 轮转保留 5 份
- 同步任务告警辅助函数 log_alert

同步相关日志通过 extra 传 partner_id / account_id，两种格式都会把它们单独列出。
"""
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

LOG_DIR = Path(__file__).resolve().parent.parent / "logs"

# 提升到 JSON 顶层、并在控制台显示的上下文字段
CONTEXT_FIELDS = ("partner_id", "account_id", "alert_level")

_STANDARD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "urllib3": logging.WARNING,
    "apscheduler": logging.WARNING,
    "sqlalchemy": logging.WARNING,
}


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class SyncJsonFormatter(logging.Formatter):
    """
    JSON 格式，例如：
    {"ts": "2026-01-15T10:30:15.123Z", "level": "INFO", "logger": "ib_portal.services.trade_store",
     "partner_id": 3, "account_id": "100234", "message": "...", "extra": {"stored": 12}}
    """

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        data: Dict[str, Any] = {
            "ts": ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
        }
        extra = _extra_fields(record)
        for key in CONTEXT_FIELDS:
            if key in extra:
                data[key] = _jsonable(extra.pop(key))
        data["message"] = record.getMessage()
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        if extra:
            data["extra"] = {k: _jsonable(v) for k, v in extra.items()}
        return json.dumps(data, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """控制台格式：时间 级别 [模块] 消息 (partner_id=.. account_id=..)"""

    LEVEL_COLORS = {
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = False):
        super().__init__(datefmt="%Y-%m-%d %H:%M:%S")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8}"
        color = self.LEVEL_COLORS.get(record.levelno) if self.use_color else None
        if color:
            level = f"{color}{level}{self.RESET}"

        name = record.name.split("ib_portal.", 1)[-1]
        line = f"{self.formatTime(record, self.datefmt)} {level} [{name}] {record.getMessage()}"

        extra = _extra_fields(record)
        context = " ".join(f"{key}={extra[key]}" for key in CONTEXT_FIELDS if key in extra)
        if context:
            line += f" ({context})"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _file_handler(path: Path, level: int) -> Optional[logging.Handler]:
    try:
        handler = logging.handlers.RotatingFileHandler(
            path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
    except OSError as e:
        logging.getLogger(__name__).warning(f"无法创建日志文件 {path}: {e}")
        return None
    handler.setLevel(level)
    handler.setFormatter(SyncJsonFormatter())
    return handler


def setup_logging(log_dir: Path = LOG_DIR, console_level: int = logging.INFO) -> logging.Logger:
    """配置根日志记录器（重复调用会替换已有处理器）"""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(console_level)
    console.setFormatter(ConsoleFormatter(use_color=sys.stdout.isatty()))
    root.addHandler(console)

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        root.warning(f"无法创建日志目录 {log_dir}: {e}")
    else:
        for name, level in (("app.log", logging.DEBUG), ("error.log", logging.WARNING)):
            handler = _file_handler(log_dir / name, level)
            if handler is not None:
                root.addHandler(handler)

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
    return root


root_logger = setup_logging()


class AlertLevel:
    """告警级别常量"""
    P0_CRITICAL = "P0"  # 致命：同步任务整体失败
    P1_URGENT = "P1"    # 紧急：部分账号同步失败
    P2_WARNING = "P2"   # 警告：需要关注


def log_alert(
    logger: logging.Logger,
    level: str,
    title: str,
    message: str,
    context: Optional[dict] = None,
    suggested_actions: Optional[list] = None
):
    """记录告警日志

    Example:
        log_alert(
            logger,
            AlertLevel.P1_URGENT,
            "交易同步部分失败",
            "本轮 3/40 个账号同步失败",
            context={"failed_accounts": ["100234", "100871", "100902"]},
            suggested_actions=["检查 MT5 API 是否可用", "检查账号密码是否已配置"]
        )
    """
    extra = {
        "alert_level": level,
        "alert_title": title,
    }
    if context:
        extra["context"] = context
    if suggested_actions:
        extra["suggested_actions"] = suggested_actions

    if level == AlertLevel.P0_CRITICAL:
        logger.critical(f"[{level}] {title}: {message}", extra=extra)
    elif level == AlertLevel.P1_URGENT:
        logger.error(f"[{level}] {title}: {message}", extra=extra)
    else:
        logger.warning(f"[{level}] {title}: {message}", extra=extra)
