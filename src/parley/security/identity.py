from __future__ import annotations

"""Caller identity as handed over by the upstream auth layer.

Session issuance and verification happen before requests reach this service;
the authenticated account id arrives in the ``X-Account-Id`` header.
"""

from typing import Optional

from fastapi import Header

from ..domain.errors import Unauthorized


ACCOUNT_HEADER = "X-Account-Id"


def get_account_id(x_account_id: Optional[str] = Header(default=None, alias=ACCOUNT_HEADER)) -> str:
    account_id = (x_account_id or "").strip()
    if not account_id:
        raise Unauthorized()
    return account_id
