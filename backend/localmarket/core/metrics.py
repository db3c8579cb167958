from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str, amount: int = 1) -> None:
    with _lock:
        _metrics[key] += amount


def record_coupon_validated(valid: bool) -> None:
    _inc("coupon_validations")
    if not valid:
        _inc("coupon_validations_invalid")


def record_coupon_redeemed() -> None:
    _inc("coupon_redemptions")


def record_coupon_rejected(reason: str) -> None:
    _inc("coupon_rejections")
    _inc(f"coupon_rejections.{reason}")


def record_benefit_consumed() -> None:
    _inc("benefits_consumed")


def record_premium_reconciled(deactivated_products: int) -> None:
    _inc("premium_reconciliations")
    _inc("products_deactivated", deactivated_products)


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
