from html import escape
from typing import Optional

from .config import settings


def _conversation_url(conversation_id: str) -> str:
    return f"{settings.app_url.rstrip('/')}/chat?conversation={conversation_id}"


def render_message_digest_email(
    *,
    recipient_name: Optional[str],
    sender_name: Optional[str],
    conversation_id: str,
    unread_count: int,
    context_title: Optional[str] = None,
    lang: str = "en",
) -> tuple[str, str, str]:
    lang = (lang or "en").split(",")[0][:2].lower()
    url = _conversation_url(conversation_id)
    count = max(1, int(unread_count or 1))
    if lang == "zh":
        common = {
            "name": recipient_name or "用戶",
            "sender": sender_name or "用戶",
        }
        subject = f"{sender_name or '有人'} 傳了訊息給你"
        lines = [
            f"Hi {common['name']}，",
            "",
            "你有未讀訊息！",
            "",
            f"來自：{common['sender']}",
        ]
        if context_title:
            lines.append(f"關於：{context_title}")
        lines.extend([f"未讀數量：{count} 則", "", f"查看訊息：{url}"])
        body = "\n".join(lines)
        html = (
            f"<p>Hi {escape(common['name'])}，</p>"
            "<p>你有未讀訊息！</p>"
            f"<p><strong>{escape(common['sender'])}</strong>"
            + (f"<br>關於「{escape(context_title)}」" if context_title else "")
            + f"</p><p>{count} 則未讀訊息</p>"
            f"<p><a href=\"{escape(url)}\">查看訊息</a></p>"
        )
        return subject, body, html

    common = {
        "name": recipient_name or "there",
        "sender": sender_name or "Someone",
    }
    noun = "message" if count == 1 else "messages"
    subject = f"{common['sender']} sent you {count} new {noun}"
    lines = [
        f"Hi {common['name']},",
        "",
        f"You have {count} unread {noun} from {common['sender']}.",
    ]
    if context_title:
        lines.append(f"About: {context_title}")
    lines.extend(["", f"Open the conversation: {url}"])
    body = "\n".join(lines)
    html = (
        f"<p>Hi {escape(common['name'])},</p>"
        f"<p>You have <strong>{count}</strong> unread {noun} from <strong>{escape(common['sender'])}</strong>.</p>"
        + (f"<p>About: {escape(context_title)}</p>" if context_title else "")
        + f"<p><a href=\"{escape(url)}\">Open the conversation</a></p>"
    )
    return subject, body, html
