"""
RouteGuard Backend — Stored File Handler
==========================================

What:  Upload (POST), download (GET ?path=) and delete (DELETE) of files
       handled by the file ingestion stage.
How:   By the time POST reaches this handler the pipeline has already
       validated and stored every file; the handler reports the results.
       GET and DELETE go through FileIngestor, which refuses paths outside
       the storage root.
"""

import logging
import mimetypes
from typing import Dict

from starlette.responses import Response

from routeguard.exceptions import RouteNotFoundError, UploadRejectedError
from routeguard.handlers.base import Reply, RequestHandler, VerbHandler
from routeguard.schemas.upload import StoredFilePath

logger = logging.getLogger(__name__)


class StoredFileHandler(RequestHandler):
    def verbs(self) -> Dict[str, VerbHandler]:
        return {
            "GET": VerbHandler(self.download, query_model=StoredFilePath),
            "POST": VerbHandler(self.upload, status_code=201),
            "DELETE": VerbHandler(self.delete, body_model=StoredFilePath),
        }

    async def upload(self, ctx) -> Reply:
        if not ctx.uploads and not ctx.upload_errors:
            raise UploadRejectedError(message="No files uploaded")
        if not ctx.uploads:
            # Non-strict route where every file failed
            raise UploadRejectedError(errors=ctx.upload_errors)

        data = {"files": [result.public_view() for result in ctx.uploads]}
        if ctx.upload_errors:
            data["errors"] = ctx.upload_errors
        count = len(ctx.uploads)
        return Reply(data=data, message=f"{count} file{'s' if count != 1 else ''} uploaded")

    async def download(self, ctx) -> Response:
        path = ctx.query.path
        content = await self.services.ingestor.read(path)
        if content is None:
            raise RouteNotFoundError(path)
        media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        return Response(content=content, media_type=media_type)

    async def delete(self, ctx) -> Reply:
        path = ctx.body.path
        if not await self.services.ingestor.delete(path):
            raise RouteNotFoundError(path)
        return Reply(data={"path": path}, message="File deleted")
