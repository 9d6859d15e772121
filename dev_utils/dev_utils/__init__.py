# Copyright (c) Microsoft. All rights reserved.
# Licensed under the MIT license. See LICENSE file in the project root for
# full license information.

from .custom_mock import HangingAsyncMock  # noqa: F401
