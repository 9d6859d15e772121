# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import asyncio
import unittest.mock as mock


class HangingAsyncMock(mock.AsyncMock):
    """AsyncMock whose invocations do not return until released.

    Once released, every pending and future invocation returns (or raises) immediately.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.side_effect = self._do_hang
        self._is_hanging = asyncio.Event()
        self._stop_hanging = asyncio.Event()
        self._release_result = None
        self._release_exception = None

    async def _do_hang(self, *args, **kwargs):
        self._is_hanging.set()
        await self._stop_hanging.wait()
        if self._release_exception is not None:
            raise self._release_exception
        return self._release_result

    async def wait_for_hang(self):
        await self._is_hanging.wait()

    def is_hanging(self):
        return self._is_hanging.is_set() and not self._stop_hanging.is_set()

    def stop_hanging(self, result=None, exception=None):
        """Release the invocations, returning the result or raising the exception"""
        self._release_result = result
        self._release_exception = exception
        self._stop_hanging.set()
