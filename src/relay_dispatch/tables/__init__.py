# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table managers for the dispatch database."""

from .history import MessageHistoryTable
from .jobs import DEFAULT_LEASE_MS, JobsTable
from .pending import PendingMessagesTable

__all__ = [
    "DEFAULT_LEASE_MS",
    "JobsTable",
    "MessageHistoryTable",
    "PendingMessagesTable",
]
