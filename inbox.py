import logging
from typing import List

from database import SERVER_TIMESTAMP, DocumentStore, check_doc_id
from schemas import AdIn

logger = logging.getLogger("oodoo.inbox")


def ads_path(user_id: str) -> str:
    return f"mailboxes/{check_doc_id(user_id)}/ads"


class InboxService:
    """Business-to-user ads delivered to a per-user mailbox."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def send_ad(self, sender_id: str, payload: AdIn) -> dict:
        ad_id = self.store.add(ads_path(payload.targetUserId), {
            "content": payload.content,
            "senderId": sender_id,
            "createdAt": SERVER_TIMESTAMP,
        })
        logger.info("Ad %s sent to %s", ad_id, payload.targetUserId)
        return {"id": ad_id, "message": "Ad sent"}

    def list_ads(self, user_id: str) -> List[dict]:
        return self.store.query(ads_path(user_id), order_by=[("createdAt", "asc")])
