# utils/notifier.py
"""
通知只入队，不在请求里直接调 Telegram；入队失败只记日志。
必须在结算事务 commit 之后调用。
"""
import logging
from extensions import notify_queue

logger = logging.getLogger(__name__)

SEND_JOB = 'utils.notify_jobs.send_telegram_message'


def mining_complete_text(amount, balance):
    return (
        "⛏️ <b>Mining Complete!</b>\n\n"
        f"💰 You earned: <b>+{amount:,} BOLT</b>\n"
        f"💎 New balance: <b>{balance:,} BOLT</b>\n\n"
        "🚀 Start a new mining session now!"
    )


def payment_confirmed_text(product_type, amount, currency):
    return (
        "✅ <b>Payment Confirmed!</b>\n\n"
        f"📦 Product: <b>{product_type}</b>\n"
        f"💰 Amount: <b>{amount} {currency}</b>\n\n"
        "Thank you for your support! 🙏"
    )


def mining_power_upgrade_text(old_power, new_power):
    return (
        "⚡ <b>Mining Power Upgraded!</b>\n\n"
        f"📊 Previous: <b>{old_power}x</b>\n"
        f"🚀 New: <b>{new_power}x</b>"
    )


def mining_duration_upgrade_text(old_hours, new_hours):
    return (
        "⏱️ <b>Mining Duration Upgraded!</b>\n\n"
        f"📊 Previous: <b>{old_hours} hours</b>\n"
        f"🚀 New: <b>{new_hours} hours</b>"
    )


def notify_user(user, text):
    if user is None or user.bot_blocked:
        return False
    try:
        notify_queue.enqueue(SEND_JOB, user.id, user.telegram_id, text, job_timeout=60)
        return True
    except Exception as e:
        # 通知失败不影响结算
        logger.warning(f"[notify_user] 入队失败 user={user.id}: {e}")
        return False


def notify_mining_complete(user, amount, balance):
    return notify_user(user, mining_complete_text(int(amount), int(balance)))


def notify_payment_confirmed(user, payment, reward):
    product_type = payment.product_type
    if product_type == 'mining_power' and 'current' in reward:
        text = mining_power_upgrade_text(reward['previous'], reward['current'])
    elif product_type == 'mining_duration' and 'current' in reward:
        text = mining_duration_upgrade_text(reward['previous'], reward['current'])
    else:
        currency = 'TON' if payment.rail.value == 'ton' else 'Stars'
        amount = format(payment.amount_expected.normalize(), 'f')
        text = payment_confirmed_text(product_type, amount, currency)
    return notify_user(user, text)
