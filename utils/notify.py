from collections import deque
from typing import Deque, Optional

from app.models.provenance import CertificateIssuedEvent, utcnow

# in-process notifications kept per Notifier; older ones are dropped first
MEMORY_NOTIFICATION_LIMIT = 1000


class Notifier:
    """
    Writes notification documents for the delivery layer to pick up.

    With a motor collection the documents land in MongoDB; without one they
    are kept on the instance, up to `max_kept` of the most recent ones,
    which is what tests and memory runs use.
    """

    def __init__(self, collection=None, max_kept: int = MEMORY_NOTIFICATION_LIMIT):
        self.collection = collection
        self.sent: Deque[dict] = deque(maxlen=max_kept)

    async def notify(
        self,
        user_id: Optional[str],
        role: str,
        title: str,
        message: str,
        batch_id: Optional[str] = None,
        category: str = "system",
        metadata: Optional[dict] = None,
    ) -> dict:
        notification = {
            "user_id": user_id,
            "role": role,
            "title": title,
            "message": message,
            "batch_id": batch_id,
            "category": category,
            "metadata": metadata or {},
            "read": False,
            "createdAt": utcnow(),
        }
        if self.collection is not None:
            await self.collection.insert_one(dict(notification))
        else:
            self.sent.append(notification)
        return notification

    async def certificate_issued(self, event: CertificateIssuedEvent, farmer_id: Optional[str] = None) -> dict:
        return await self.notify(
            user_id=farmer_id,
            role="Farmer",
            title="Certificate Issued",
            message=f"All 7 farming stages verified. Certificate {event.certificate_id} issued for batch {event.batch_id}",
            batch_id=event.batch_id,
            category="certificate",
            metadata=event.model_dump(),
        )
