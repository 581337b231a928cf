# utils/notify_jobs.py
import logging
from flask import current_app
from sqlalchemy import update
from extensions import db
from models import BoltUser
from utils.telegram_api import send_message

logger = logging.getLogger("notify_jobs")


def mark_bot_blocked(user_id):
    """永久失败回写到用户，通知调度不再投递"""
    db.session.execute(
        update(BoltUser)
        .where(BoltUser.id == user_id)
        .values(bot_blocked=True)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    logger.info(f"[mark_bot_blocked] user {user_id} 已屏蔽 bot")


def deliver(user_id, chat_id, text):
    """需要在 app context 中调用"""
    result = send_message(chat_id, text, timeout=current_app.config['NOTIFY_TIMEOUT'])
    if result["blocked"]:
        mark_bot_blocked(user_id)
    elif not result["ok"]:
        logger.warning(f"[deliver] user {user_id} 通知失败: {result['error']}")
    return result


# ----------------- 异步任务（RQ worker 执行） -----------------
def send_telegram_message(user_id, chat_id, text):
    from app import create_app
    app = create_app()

    with app.app_context():
        return deliver(user_id, chat_id, text)
