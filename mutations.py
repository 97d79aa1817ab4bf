"""
Single-document writes with a fixed authorship stamp.

The gateway performs no authorization of its own: callers run their gates first,
and a store-side denial comes back as Failed(PERMISSION_DENIED). Writes are not
reflected locally; the next live query snapshot carries them.
"""
import logging
from typing import Any, Awaitable, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from database import SERVER_TIMESTAMP, DocumentStore
from errors import FailureKind, StoreError
from schemas import ANNOUNCEMENTS, FREEDOM_WALL_POSTS

logger = logging.getLogger(__name__)

CREATED_AT = "createdAt"
UPDATED_AT = "updatedAt"

DEFAULT_AUTHORSHIP = ("createdBy", "createdByName")
AUTHORSHIP_FIELDS: Dict[str, Tuple[str, str]] = {
    ANNOUNCEMENTS: ("authorId", "authorName"),
    FREEDOM_WALL_POSTS: ("authorId", "authorName"),
}


class Ok(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: Literal[True] = True
    doc_id: Optional[str] = None


class Failed(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: Literal[False] = False
    kind: FailureKind
    message: str = ""

    @property
    def denied(self) -> bool:
        return self.kind is FailureKind.PERMISSION_DENIED


MutationOutcome = Union[Ok, Failed]


def authorship_fields(collection: str) -> Tuple[str, str]:
    return AUTHORSHIP_FIELDS.get(collection, DEFAULT_AUTHORSHIP)


class MutationGateway:
    def __init__(self, store: DocumentStore, session):
        self.store = store
        self.session = session

    async def create(self, collection: str, fields: Dict[str, Any], display_name: Optional[str] = None) -> MutationOutcome:
        identity = self.session.current
        if identity is None:
            return Failed(kind=FailureKind.PERMISSION_DENIED, message="Not signed in")
        id_field, name_field = authorship_fields(collection)
        doc = dict(fields)
        doc.pop("id", None)
        doc.update({
            id_field: identity.uid,
            name_field: display_name if display_name is not None else (identity.display_name or identity.email),
            CREATED_AT: SERVER_TIMESTAMP,
            UPDATED_AT: SERVER_TIMESTAMP,
        })
        return await self._run("create", collection, self.store.insert(collection, doc))

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> MutationOutcome:
        if self.session.current is None:
            return Failed(kind=FailureKind.PERMISSION_DENIED, message="Not signed in")
        # authorship and creation time are fixed once written
        fixed = {"id", CREATED_AT, *authorship_fields(collection)}
        doc = {k: v for k, v in fields.items() if k not in fixed}
        doc[UPDATED_AT] = SERVER_TIMESTAMP
        return await self._run("update", collection, self.store.update(collection, doc_id, doc), doc_id)

    async def delete(self, collection: str, doc_id: str) -> MutationOutcome:
        if self.session.current is None:
            return Failed(kind=FailureKind.PERMISSION_DENIED, message="Not signed in")
        return await self._run("delete", collection, self.store.delete(collection, doc_id), doc_id)

    async def _run(self, action: str, collection: str, call: Awaitable, doc_id: Optional[str] = None) -> MutationOutcome:
        try:
            result = await call
        except StoreError as exc:
            logger.warning("%s on %s/%s failed (%s): %s", action, collection, doc_id or "-", exc.kind.value, exc.message)
            return Failed(kind=exc.kind, message=exc.message)
        return Ok(doc_id=result if action == "create" else doc_id)
