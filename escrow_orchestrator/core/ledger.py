#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Idempotent confirmation ledger.

The ledger is the only synchronization point between overlapping evaluation
runs: whichever run inserts the (commitment, milestone) row first is the
winner, every other run reads the row back and stands down.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

from ..shared.models import MarketCapConfirmation
from .store import Store


class ConfirmationMismatchError(Exception):
    """Existing ledger entry disagrees with the attempted confirmation"""
    pass


@dataclass(frozen=True)
class AcquireResult:
    acquired: bool
    existing: Optional[MarketCapConfirmation] = None


def _same_threshold(a: float, b: float) -> bool:
    return math.isclose(float(a), float(b), rel_tol=1e-12, abs_tol=1e-9)


class ConfirmationLedger:
    def __init__(self, store: Store) -> None:
        self.store = store
        self.logger = logging.getLogger(self.__class__.__name__)

    def try_acquire(self, confirmation: MarketCapConfirmation) -> AcquireResult:
        """
        Insert the confirmation unless one already exists for the milestone.

        Raises:
            ConfirmationMismatchError: an existing entry records a different
                token or threshold. Never reconciled automatically.
        """
        inserted, existing = self.store.insert_confirmation_if_absent(confirmation)
        if inserted:
            self.logger.info(
                f"Ledger acquired commitment={confirmation.commitment_id} milestone={confirmation.milestone_id} "
                f"unlock={confirmation.unlock_lamports}"
            )
            return AcquireResult(acquired=True)

        self.verify_existing(existing, confirmation.token_mint, confirmation.threshold_usd)

        self.logger.debug(
            f"Ledger entry already present commitment={confirmation.commitment_id} milestone={confirmation.milestone_id}"
        )
        return AcquireResult(acquired=False, existing=existing)

    def verify_existing(self, existing: MarketCapConfirmation, token_mint: str, threshold_usd: float) -> None:
        """Raise ConfirmationMismatchError unless the entry matches token and threshold."""
        if existing.token_mint == token_mint and _same_threshold(existing.threshold_usd, threshold_usd):
            return
        self.logger.error(
            f"Ledger mismatch commitment={existing.commitment_id} milestone={existing.milestone_id} "
            f"existing token={existing.token_mint} threshold={existing.threshold_usd} "
            f"attempted token={token_mint} threshold={threshold_usd}"
        )
        raise ConfirmationMismatchError("Existing confirmation mismatch")

    def get(self, commitment_id: str, milestone_id: str) -> Optional[MarketCapConfirmation]:
        return self.store.get_confirmation(commitment_id, milestone_id)
