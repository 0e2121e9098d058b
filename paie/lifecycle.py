"""
Cycle de vie d'un bulletin: brouillon → validé, verrouillage
A validated or locked payslip can no longer be regenerated or deleted.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Optional

from paie.exceptions import InvalidInputError
from paie.models import STATUS_VALIDATED, PayslipResult
from paie.ports import PayslipStore

logger = logging.getLogger(__name__)


def ensure_editable(payslip: PayslipResult, action: str):
    if payslip.status == STATUS_VALIDATED:
        raise InvalidInputError(
            f"Bulletin {payslip.period_start:%m-%Y} de {payslip.employee_id} validé: {action} impossible"
        )
    if payslip.locked:
        raise InvalidInputError(
            f"Bulletin {payslip.period_start:%m-%Y} de {payslip.employee_id} verrouillé: {action} impossible"
        )


class PayslipLifecycle:
    """Validation et verrouillage des bulletins enregistrés"""

    def __init__(self, store: PayslipStore, audit_logger=None):
        self.store = store
        self.audit_logger = audit_logger

    def validate(self, payslip_id: str, user: str = 'system') -> PayslipResult:
        payslip = self._get(payslip_id)
        if payslip.status == STATUS_VALIDATED:
            raise InvalidInputError(f"Le bulletin {payslip_id} est déjà validé")
        if payslip.locked:
            raise InvalidInputError(f"Le bulletin {payslip_id} est verrouillé et ne peut pas être modifié")

        now = datetime.now()
        updated = replace(payslip, status=STATUS_VALIDATED, validated_at=now, updated_at=now)
        self.store.replace(updated)
        self._audit(user, 'validate', updated)
        logger.info(f"Bulletin {payslip_id} validé par {user}")
        return updated

    def set_locked(self, payslip_id: str, locked: bool, user: str = 'system',
                   is_admin: bool = False) -> PayslipResult:
        """
        Verrouiller ou déverrouiller un bulletin

        Only an administrator may unlock a validated payslip.
        """
        if not isinstance(locked, bool):
            raise InvalidInputError("La valeur de verrouillage doit être un booléen")

        payslip = self._get(payslip_id)
        if payslip.locked == locked:
            raise InvalidInputError(
                f"Le bulletin est déjà {'verrouillé' if locked else 'déverrouillé'}"
            )
        if payslip.status == STATUS_VALIDATED and not locked and not is_admin:
            raise InvalidInputError(
                "Les bulletins validés ne peuvent être déverrouillés que par un administrateur"
            )

        updated = replace(payslip, locked=locked, updated_at=datetime.now())
        self.store.replace(updated)
        self._audit(user, 'lock' if locked else 'unlock', updated)
        logger.info(f"Bulletin {payslip_id} {'verrouillé' if locked else 'déverrouillé'} par {user}")
        return updated

    def _get(self, payslip_id: str) -> PayslipResult:
        payslip: Optional[PayslipResult] = self.store.get(payslip_id)
        if payslip is None:
            raise InvalidInputError(f"Bulletin introuvable: {payslip_id}")
        return payslip

    def _audit(self, user: str, action: str, payslip: PayslipResult):
        if self.audit_logger is not None:
            self.audit_logger.log(user, action, payslip.company_id, payslip.employee_id,
                                  payslip.period_start, {'payslip_id': payslip.id})
