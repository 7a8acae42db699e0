from typing import Any, Dict, Optional, Union

import httpx
from fastapi import HTTPException

from portal import config


def async_client(timeout: Union[float, httpx.Timeout] = 60) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


def require_key(provider: str) -> str:
    key = {
        "openai": config.OPENAI_API_KEY,
        "replicate": config.REPLICATE_API_KEY,
        "kavenegar": config.KAVENEGAR_API_KEY,
    }.get(provider, "")
    if not key:
        raise HTTPException(status_code=500, detail=f"{provider} api key not configured")
    return key


def openai_headers(api_key: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


def error_detail(resp: httpx.Response, default: str) -> str:
    try:
        payload: Any = resp.json()
    except ValueError:
        payload = None
    message: Optional[str] = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            message = err.get("message")
        elif isinstance(err, str):
            message = err
        message = message or payload.get("detail")
    if not isinstance(message, str) or not message:
        message = default
    return message
