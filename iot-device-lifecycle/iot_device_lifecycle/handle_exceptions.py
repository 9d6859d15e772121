# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import asyncio
import logging

logger = logging.getLogger(__name__)


def handle_background_exception(e: BaseException) -> None:
    """
    Function which handles exceptions raised by work that nobody awaits, such as the tasks
    spawned in response to connection status notifications or incoming messages. These
    exceptions need special handling because such work happens in response to
    non-user-initiated events, so there's nobody else to catch them.

    :param Exception e: Exception object raised from inside a background task
    """
    logger.error(msg="Exception caught in background task.  Unable to handle.", exc_info=e)


def log_task_failure(task: "asyncio.Future") -> None:
    """Done callback for background tasks reporting any failure they ended with.
    Cancellation of the task is not a failure.
    """
    if task.cancelled():
        return
    e = task.exception()
    if e is not None:
        handle_background_exception(e)


def swallow_unraised_exception(e, log_msg=None, log_lvl="warning"):
    """Swallow and log an exception object.

    Convenience function for logging, as exceptions can only be logged correctly from within a
    except block.

    :param Exception e: Exception object to be swallowed.
    :param str log_msg: Optional message to use when logging.
    :param str log_lvl: The log level to use for logging. Default "warning".
    """
    try:
        raise e
    except Exception:
        if log_lvl == "warning":
            logger.warning(log_msg, exc_info=True)
        elif log_lvl == "error":
            logger.error(log_msg, exc_info=True)
        else:
            logger.debug(log_msg, exc_info=True)
