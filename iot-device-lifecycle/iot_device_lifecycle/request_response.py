# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Infrastructure for use implementing a high-level async request/response paradigm"""
import asyncio
import logging
import uuid
from typing import Dict

logger = logging.getLogger(__name__)


class Response:
    def __init__(self, request_id: str, status: int, body: str) -> None:
        self.request_id = request_id
        self.status = status
        self.body = body


class Request:
    def __init__(self) -> None:
        self.request_id = str(uuid.uuid4())
        self.response_future: "asyncio.Future[Response]" = (
            asyncio.get_running_loop().create_future()
        )

    async def get_response(self) -> Response:
        return await self.response_future


class RequestLedger:
    """Tracks outstanding requests so responses can be matched to them by request ID.

    All methods must be called from the event loop thread.
    """

    def __init__(self) -> None:
        self.pending: Dict[str, "asyncio.Future[Response]"] = {}

    def __len__(self) -> int:
        return len(self.pending)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self.pending

    def create_request(self) -> Request:
        request = Request()
        self.pending[request.request_id] = request.response_future
        return request

    def delete_request(self, request_id: str) -> None:
        self.pending.pop(request_id, None)

    def match_response(self, response: Response) -> None:
        """Complete the request the response belongs to.

        :raises: KeyError if there is no pending request with the response's ID
        """
        future = self.pending.pop(response.request_id)
        if not future.done():
            future.set_result(response)

    def cancel_all(self, e: Exception) -> None:
        """Fail every pending request with the given exception"""
        if self.pending:
            logger.debug("Failing {} pending request(s) with {!r}".format(len(self.pending), e))
        for future in self.pending.values():
            if not future.done():
                future.set_exception(e)
        self.pending.clear()
