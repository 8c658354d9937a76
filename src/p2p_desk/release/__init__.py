"""Auto-release — payment matching, risk gating and the release state machine."""

from p2p_desk.release.codes import CodeUnavailableError, TotpCodeProvider, VerificationCodeProvider
from p2p_desk.release.ledger import DoubleClaimError, PaymentLedger
from p2p_desk.release.matcher import PaymentMatcher, name_similarity, normalize_name
from p2p_desk.release.orchestrator import AutoReleaseOrchestrator, InvariantViolation, ReleaseAttempt
from p2p_desk.release.registry import TrustedCounterpartyRegistry
from p2p_desk.release.risk import BuyerRiskAssessor, RiskVerdict, evaluate_stats

__all__ = [
    "AutoReleaseOrchestrator",
    "BuyerRiskAssessor",
    "CodeUnavailableError",
    "DoubleClaimError",
    "InvariantViolation",
    "PaymentLedger",
    "PaymentMatcher",
    "ReleaseAttempt",
    "RiskVerdict",
    "TotpCodeProvider",
    "TrustedCounterpartyRegistry",
    "VerificationCodeProvider",
    "evaluate_stats",
    "name_similarity",
    "normalize_name",
]
