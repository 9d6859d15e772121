# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import pytest

"""
NOTE: Tests that need a non-specific, arbitrary exception should use one of the following
fixtures. Raising Exception or BaseException directly risks the exception being caught by
unrelated broad handling, hiding other errors.

These fixtures instead provide a subclass of Exception or BaseException that is not defined
anywhere else, guaranteeing that it is only handled by broad all-encompassing handling, and that
tests checking it is raised do not spuriously pass due to a different exception being raised.

You may (and should!) still use exceptions defined elsewhere for specific, non-arbitrary
exceptions (e.g. testing that a ConnectionFailedError is retried)
"""


@pytest.fixture
def arbitrary_exception():
    class ArbitraryException(Exception):
        pass

    return ArbitraryException()


@pytest.fixture
def arbitrary_base_exception():
    class ArbitraryBaseException(BaseException):
        pass

    return ArbitraryBaseException()
