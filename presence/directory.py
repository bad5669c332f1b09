from typing import Optional
import logging

from presence.models import ClassInfo, Location
from presence.store import DocumentStore

logger = logging.getLogger(__name__)

CLASSES = "classes"
ENROLLMENTS = "enrollments"


class ClassDirectory:
    """Read-only view of the class and enrollment collections.

    Both collections are owned by the class management service; this side
    only looks up class metadata and active enrollments.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    def get_class(self, class_id: str) -> Optional[ClassInfo]:
        doc = self.store.get(CLASSES, class_id)
        if doc is None:
            return None
        location = doc.get("location")
        return ClassInfo(
            id=doc["id"],
            name=doc.get("name") or "",
            teacher_id=doc.get("teacher_id"),
            subject=doc.get("subject"),
            location=Location(**location) if location else None,
        )

    def get_location(self, class_id: str) -> Optional[Location]:
        class_info = self.get_class(class_id)
        return class_info.location if class_info else None

    def is_enrolled(self, attendee_id: str, class_id: str) -> bool:
        matches = self.store.find(
            ENROLLMENTS,
            [
                ("student_id", "==", attendee_id),
                ("class_id", "==", class_id),
                ("status", "==", "active"),
            ],
            limit=1,
        )
        return bool(matches)
