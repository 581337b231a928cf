# utils/telegram_api.py
import logging
import requests
from flask import current_app

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


def _url(method):
    token = current_app.config.get('TELEGRAM_BOT_TOKEN')
    if not token:
        raise RuntimeError("Missing TELEGRAM_BOT_TOKEN")
    return f"{TELEGRAM_API_BASE}/bot{token}/{method}"


def send_message(chat_id, text, timeout=10):
    """
    发送消息，不抛异常
    :return: {"ok": bool, "blocked": bool, "error": str|None}
    """
    try:
        resp = requests.post(_url("sendMessage"), json={
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }, timeout=timeout)
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning(f"[send_message] chat {chat_id} 调用异常: {e}")
        return {"ok": False, "blocked": False, "error": str(e)}

    if data.get("ok"):
        return {"ok": True, "blocked": False, "error": None}

    error_code = data.get("error_code")
    description = data.get("description") or ""
    # 用户屏蔽了 bot 或账号注销：永久失败
    blocked = error_code == 403 or "blocked" in description or "deactivated" in description
    logger.info(f"[send_message] chat {chat_id} 发送失败: {error_code} {description}")
    return {"ok": False, "blocked": blocked, "error": description}


def create_invoice_link(title, description, payload, amount, timeout=10):
    """创建 Telegram Stars 发票链接（currency=XTR，amount 为 Stars 数量）"""
    resp = requests.post(_url("createInvoiceLink"), json={
        "title": title,
        "description": description or title,
        "payload": payload,
        "currency": "XTR",
        "prices": [{"label": title, "amount": int(amount)}],
    }, timeout=timeout)
    data = resp.json()
    if not data.get("ok"):
        raise RuntimeError(data.get("description") or "Failed to create invoice")
    return data["result"]


def answer_pre_checkout_query(query_id, ok, error_message=None, timeout=10):
    body = {"pre_checkout_query_id": query_id, "ok": bool(ok)}
    if not ok:
        body["error_message"] = error_message or "Payment cannot be processed"
    try:
        resp = requests.post(_url("answerPreCheckoutQuery"), json=body, timeout=timeout)
        return resp.json().get("ok", False)
    except (requests.RequestException, ValueError) as e:
        logger.error(f"[answer_pre_checkout_query] {query_id} 调用异常: {e}")
        return False
