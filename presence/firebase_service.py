import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core.exceptions import AlreadyExists, GoogleAPICallError, NotFound
from typing import Any, Dict, List, Optional
import logging

from presence.config import settings
from presence.store import DocumentStore, DuplicateKeyError, StoreError

logger = logging.getLogger(__name__)

# Firestore caps a write batch at 500 operations
BATCH_SIZE = 500


class FirestoreStore(DocumentStore):
    def __init__(self, client=None):
        """Connect to Firestore, initializing the Admin SDK when needed."""
        self.db = client
        if self.db is None:
            self.initialize_firebase()

    def initialize_firebase(self):
        """Initialize Firebase connection."""
        try:
            if not firebase_admin._apps:
                if settings.FIREBASE_CREDENTIALS_PATH:
                    cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH)
                    firebase_admin.initialize_app(cred)
                else:
                    # Use default credentials (for deployment environments)
                    firebase_admin.initialize_app()

                logger.info("Firebase Admin SDK initialized successfully")

            self.db = firestore.client()

        except Exception as e:
            logger.error(f"Failed to initialize Firebase: {e}")
            raise

    def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a document, failing if the id is taken.

        DocumentReference.create is a server-side precondition, so two racing
        creates for the same id cannot both succeed.
        """
        try:
            self.db.collection(collection).document(doc_id).create(data)
        except AlreadyExists:
            raise DuplicateKeyError(collection, doc_id)
        except GoogleAPICallError as e:
            logger.error(f"Error creating {collection}/{doc_id}: {e}")
            raise StoreError(str(e)) from e
        result = dict(data)
        result['id'] = doc_id
        return result

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        try:
            doc = self.db.collection(collection).document(doc_id).get()
        except GoogleAPICallError as e:
            logger.error(f"Error fetching {collection}/{doc_id}: {e}")
            raise StoreError(str(e)) from e
        if not doc.exists:
            return None
        data = doc.to_dict() or {}
        data['id'] = doc.id
        return data

    def _query(self, collection, filters, order_by=None, descending=False, limit=None):
        query = self.db.collection(collection)
        for field, op, value in filters:
            query = query.where(field, op, value)
        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        if limit is not None:
            query = query.limit(limit)
        return query

    def find(self, collection, filters=(), order_by=None, descending=False, limit=None) -> List[Dict[str, Any]]:
        try:
            results = []
            for doc in self._query(collection, filters, order_by, descending, limit).stream():
                data = doc.to_dict() or {}
                data['id'] = doc.id
                results.append(data)
        except GoogleAPICallError as e:
            logger.error(f"Query on {collection} failed: {e}")
            raise StoreError(str(e)) from e

        logger.debug("Retrieved %d documents from %s", len(results), collection)
        return results

    def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> bool:
        try:
            self.db.collection(collection).document(doc_id).update(changes)
            return True
        except NotFound:
            return False
        except GoogleAPICallError as e:
            logger.error(f"Error updating {collection}/{doc_id}: {e}")
            raise StoreError(str(e)) from e

    def _apply_in_batches(self, collection, filters, apply) -> int:
        try:
            refs = [doc.reference for doc in self._query(collection, filters).stream()]
            for start in range(0, len(refs), BATCH_SIZE):
                batch = self.db.batch()
                for ref in refs[start:start + BATCH_SIZE]:
                    apply(batch, ref)
                batch.commit()
        except GoogleAPICallError as e:
            logger.error(f"Batch write on {collection} failed: {e}")
            raise StoreError(str(e)) from e
        return len(refs)

    def update_many(self, collection, filters, changes) -> int:
        return self._apply_in_batches(
            collection, filters, lambda batch, ref: batch.update(ref, changes)
        )

    def delete(self, collection: str, doc_id: str) -> bool:
        try:
            ref = self.db.collection(collection).document(doc_id)
            if not ref.get().exists:
                return False
            ref.delete()
            return True
        except GoogleAPICallError as e:
            logger.error(f"Error deleting {collection}/{doc_id}: {e}")
            raise StoreError(str(e)) from e

    def delete_many(self, collection, filters) -> int:
        return self._apply_in_batches(
            collection, filters, lambda batch, ref: batch.delete(ref)
        )
