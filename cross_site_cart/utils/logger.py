# cross_site_cart/utils/logger.py
import os, sys, time, json

LEVELS = {"ERROR": 40, "WARN": 30, "INFO": 20, "DEBUG": 10, "NONE": 100}
LOG_LEVEL = LEVELS.get(os.getenv("LOG_LEVEL", "INFO").upper(), 20)

def _ts():
    return time.strftime("%H:%M:%S")

def log(level: str, msg: str, context: dict | None = None):
    if LEVELS[level] < LOG_LEVEL:
        return
    if context:
        msg = f"{msg} | Context: {json.dumps(context, default=str)}"
    print(f"[{_ts()}][{level}] {msg}", file=sys.stdout if LEVELS[level] < 40 else sys.stderr)

def debug(msg, context=None): log("DEBUG", msg, context)
def info(msg, context=None):  log("INFO", msg, context)
def warn(msg, context=None):  log("WARN", msg, context)
def error(msg, context=None): log("ERROR", msg, context)
