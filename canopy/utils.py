#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
import functools
import logging
import os
from typing import Optional, cast

import phonenumbers as pn
from phonenumbers import NumberParseException


def quiet_aiohttp(record: logging.LogRecord) -> bool:
    str_msg = str(getattr(record, "msg", ""))
    if "was destroyed but it is pending" in str_msg:
        return False
    if str_msg.startswith("task:") and str_msg.endswith(">"):
        return False
    return True


logger = logging.getLogger()
logger.setLevel("DEBUG")
fmt = logging.Formatter("{levelname} {module}:{lineno}: {message}", style="{")
console_handler = logging.StreamHandler()
console_handler.setLevel(
    ((os.getenv("LOGLEVEL") or os.getenv("LOG_LEVEL")) or "DEBUG").upper()
)
console_handler.setFormatter(fmt)
console_handler.addFilter(quiet_aiohttp)
logger.addHandler(console_handler)


#### Configure Parameters

# edge cases:
# accessing an unset secret loads other variables and potentially overwrites existing ones
def parse_secrets(secrets: str) -> dict[str, str]:
    pairs = [
        line.strip().split("=", 1)
        for line in secrets.split("\n")
        if line and not line.startswith("#")
    ]
    can_be_a_dict = cast(list[tuple[str, str]], pairs)
    return dict(can_be_a_dict)


@functools.cache  # don't load the same env more than once
def load_secrets(env: Optional[str] = None, overwrite: bool = False) -> None:
    if not env:
        env = os.environ.get("ENV", "dev")
    try:
        logging.info("loading secrets from %s_secrets", env)
        with open(f"{env}_secrets", encoding="utf-8") as secrets_file:
            secrets = parse_secrets(secrets_file.read())
        if overwrite:
            new_env = secrets
        else:
            # mask loaded secrets with existing env
            new_env = secrets | os.environ
        os.environ.update(new_env)
    except FileNotFoundError:
        pass


def get_secret(key: str, env: Optional[str] = None) -> str:
    try:
        secret = os.environ[key]
    except KeyError:
        load_secrets(env)
        secret = os.environ.get(key) or ""
    if secret.lower() in ("0", "false", "no"):
        return ""
    return secret


def get_float_secret(key: str, default: float) -> float:
    try:
        return float(get_secret(key) or default)
    except ValueError:
        logging.warning("%s is not a number, using %s", key, default)
        return default


## Parameters for easy access and ergonomic use

APP_NAME = os.getenv("FLY_APP_NAME")
LOCAL = APP_NAME is None
AUTH_TABLE = get_secret("AUTH_TABLE") or "auth_data"
SNAPSHOT_TABLE = get_secret("SNAPSHOT_TABLE") or "auth_snapshot"
MEDIA_DIR = get_secret("MEDIA_DIR") or "media"
USER_SERVER = "s.whatsapp.net"


#### Configure logging to file

if get_secret("LOGFILES") or not LOCAL:
    handler = logging.FileHandler("debug.log")
    handler.setLevel("DEBUG")
    handler.setFormatter(fmt)
    handler.addFilter(quiet_aiohttp)
    logger.addHandler(handler)


def wa_format(raw_address: str) -> Optional[str]:
    """Normalize a phone number or JID to a JID.
    Anything that already has a server part is passed through untouched."""
    if not raw_address:
        return None
    if "@" in raw_address:
        return raw_address
    number = raw_address if raw_address.startswith("+") else f"+{raw_address}"
    try:
        parsed = pn.parse(number, None)
    except NumberParseException:
        return None
    if not pn.is_possible_number(parsed):
        return None
    e164 = pn.format_number(parsed, pn.PhoneNumberFormat.E164)
    return f"{e164.removeprefix('+')}@{USER_SERVER}"


def is_jid_newsletter(jid: Optional[str]) -> bool:
    return bool(jid) and str(jid).endswith("@newsletter")
