"""
Fee waterfall for buys. Sells are fee-free.

Each bucket is floored independently; the principal takes whatever is left,
so treasury + vault + lp + net == gross for every input. Rounding never
creates or destroys collateral.
"""

from dataclasses import dataclass

from outcome_amm.errors import InvalidConfig


BPS = 10_000


@dataclass(frozen=True)
class FeeSplit:
    gross: int
    treasury: int
    vault: int
    lp: int
    net: int

    @property
    def total_fees(self) -> int:
        return self.treasury + self.vault + self.lp


def validate_fee_bps(treasury_bps: int, vault_bps: int, lp_bps: int) -> None:
    if min(treasury_bps, vault_bps, lp_bps) < 0:
        raise InvalidConfig("fee bps must be non-negative")
    if treasury_bps + vault_bps + lp_bps > BPS:
        raise InvalidConfig(
            f"fee bps sum {treasury_bps + vault_bps + lp_bps} exceeds {BPS}")


def split_fees(gross: int, treasury_bps: int, vault_bps: int,
               lp_bps: int) -> FeeSplit:
    validate_fee_bps(treasury_bps, vault_bps, lp_bps)
    treasury = gross * treasury_bps // BPS
    vault = gross * vault_bps // BPS
    lp = gross * lp_bps // BPS
    return FeeSplit(
        gross=gross,
        treasury=treasury,
        vault=vault,
        lp=lp,
        net=gross - treasury - vault - lp,
    )
