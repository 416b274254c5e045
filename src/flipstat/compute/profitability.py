# src/flipstat/compute/profitability.py
"""Flipping profitability calculator for FlipStat.

Computes, for a candidate object bought at a given price:
- Sale price from the subsegment reference price per sqm
- Renovation cost and project duration (renovation + average exposure)
- Financing costs (cash or mortgage)
- Taxes (individual or sole proprietor)
- Net profit, ROI and annualised ROI
- Profit split between flipper and investor
- The purchase price that hits a target annual ROI
"""

import logging
from dataclasses import dataclass
from typing import Optional

from flipstat.compute.stats import round_half_away

logger = logging.getLogger(__name__)

# Auto renovation estimate: work + materials per sqm
AUTO_WORK_COST_PER_SQM = 20000
AUTO_MATERIALS_COST_PER_SQM = 20000

# Individual income tax: 13% up to the threshold, 15% above
INDIVIDUAL_TAX_THRESHOLD = 2400000
INDIVIDUAL_TAX_LOW = 0.13
INDIVIDUAL_TAX_HIGH = 0.15
# Sole proprietor: 15% of income minus expenses
IP_TAX_RATE = 0.15

DAYS_PER_MONTH = 30

TARGET_SEARCH_START = 0.8
TARGET_SEARCH_MAX_ITERATIONS = 100
TARGET_SEARCH_PRECISION = 0.1   # annual ROI percentage points


class ProfitabilityError(ValueError):
    """Raised when a profitability calculation has unusable inputs."""


class InvalidFinancingError(ProfitabilityError):
    """Raised for an invalid mortgage setup."""


@dataclass
class FlippingParams:
    """Calculation parameters. Percentages are whole numbers (20 = 20%)."""

    reference_price_per_meter: float
    average_exposure_days: float
    renovation_type: str = 'auto'          # 'auto' or 'manual'
    work_cost: float = 0                   # per sqm, manual renovation only
    materials_cost: float = 0              # per sqm, manual renovation only
    renovation_speed: float = 1.5          # sqm per day
    additional_expenses: float = 100000
    financing: str = 'cash'                # 'cash' or 'mortgage'
    down_payment: float = 20
    mortgage_rate: float = 17
    mortgage_term: float = 20              # years
    tax_type: str = 'individual'           # 'individual' or 'ip'
    participants: str = 'flipper'          # 'flipper' or 'flipper-investor'
    profit_sharing: str = 'percentage'     # 'percentage' or 'fix-plus-percentage'
    flipper_percentage: float = 50
    investor_percentage: float = 50
    fixed_payment_amount: float = 0
    fixed_plus_percentage: float = 30
    target_annual_roi: float = 20


@dataclass
class FinancingCosts:
    """Cash outlay and financing cost over the project."""

    down_payment: float
    loan_amount: float
    monthly_payment: int
    interest_costs: int
    project_months: Optional[float] = None


@dataclass
class ProfitSharing:
    """Profit split between flipper and investor."""

    flipper: int
    investor: int
    flipper_percent: Optional[float] = None
    investor_percent: Optional[float] = None
    flipper_fixed: Optional[float] = None
    remaining_profit: Optional[int] = None


@dataclass
class ProfitabilityResult:
    """Profitability of buying an object at one price."""

    purchase_price: float          # what the buyer puts in (down payment + financing for mortgage)
    actual_purchase_price: float   # object price
    sale_price: float
    renovation_cost: float
    additional_expenses: float
    financing_costs: int
    total_costs: float
    gross_profit: float
    taxes: float
    net_profit: float
    roi: float                     # percent, 2 decimals
    annual_roi: float              # percent, 2 decimals
    total_project_days: int
    total_project_months: float
    profit_sharing: ProfitSharing
    financing: FinancingCosts


@dataclass
class ScenarioResult:
    """Current-price and target-price scenarios side by side."""

    current_price: ProfitabilityResult
    target_price: ProfitabilityResult
    target_purchase_price: int
    discount_pct: int


def load_flipping_params_from_config(
    config: dict,
    reference_price_per_meter: float,
    average_exposure_days: float,
) -> FlippingParams:
    """
    Build FlippingParams from the 'profitability' section of config.yml.

    Args:
        config: Parsed config.yml dictionary
        reference_price_per_meter: Subsegment reference price
        average_exposure_days: Subsegment average exposure

    Returns:
        FlippingParams with config overrides applied
    """
    section = config.get('profitability', {}) or {}
    known = set(FlippingParams.__dataclass_fields__) - {
        'reference_price_per_meter', 'average_exposure_days',
    }
    unknown = set(section) - known
    if unknown:
        raise ProfitabilityError(f"Unknown profitability settings: {', '.join(sorted(unknown))}")

    return FlippingParams(
        reference_price_per_meter=reference_price_per_meter,
        average_exposure_days=average_exposure_days,
        **section,
    )


def compute_renovation_cost(area: float, params: FlippingParams) -> float:
    """Renovation cost for an area in sqm."""
    if params.renovation_type == 'auto':
        return area * (AUTO_WORK_COST_PER_SQM + AUTO_MATERIALS_COST_PER_SQM)
    return area * (params.work_cost + params.materials_cost)


def compute_mortgage_payment(loan_amount: float, annual_rate: float, years: float) -> float:
    """
    Annuity monthly payment.

    Args:
        loan_amount: Amount borrowed
        annual_rate: Annual rate in percent (17 = 17%)
        years: Loan term

    Returns:
        Monthly payment
    """
    monthly_rate = annual_rate / 100 / 12
    total_payments = years * 12

    if monthly_rate == 0:
        return loan_amount / total_payments

    growth = (1 + monthly_rate) ** total_payments
    return loan_amount * monthly_rate * growth / (growth - 1)


def _validate_mortgage(params: FlippingParams) -> None:
    if not params.down_payment or params.down_payment <= 0 or params.down_payment >= 100:
        raise InvalidFinancingError(f"Invalid down payment: {params.down_payment}%")
    if not params.mortgage_rate or params.mortgage_rate <= 0:
        raise InvalidFinancingError(f"Invalid mortgage rate: {params.mortgage_rate}%")
    if not params.mortgage_term or params.mortgage_term <= 0:
        raise InvalidFinancingError(f"Invalid mortgage term: {params.mortgage_term} years")


def compute_financing_costs(
    purchase_price: float,
    params: FlippingParams,
    project_days: float,
) -> FinancingCosts:
    """
    Compute cash outlay and financing costs.

    Cash pays the full price up front. A mortgage pays the down payment and
    the monthly payment for every project month.

    Raises:
        InvalidFinancingError: Bad mortgage parameters, price or duration
    """
    if params.financing == 'cash':
        return FinancingCosts(
            down_payment=purchase_price,
            loan_amount=0,
            monthly_payment=0,
            interest_costs=0,
        )

    _validate_mortgage(params)
    if not purchase_price or purchase_price <= 0:
        raise InvalidFinancingError(f"Invalid purchase price: {purchase_price}")
    if not project_days or project_days <= 0:
        raise InvalidFinancingError(f"Invalid project duration: {project_days} days")

    down_payment = purchase_price * (params.down_payment / 100)
    loan_amount = purchase_price - down_payment
    monthly_payment = compute_mortgage_payment(loan_amount, params.mortgage_rate, params.mortgage_term)
    project_months = project_days / DAYS_PER_MONTH
    interest_costs = monthly_payment * project_months

    return FinancingCosts(
        down_payment=down_payment,
        loan_amount=loan_amount,
        monthly_payment=round_half_away(monthly_payment),
        interest_costs=round_half_away(interest_costs),
        project_months=round(project_months, 1),
    )


def compute_taxes(
    purchase_price: float,
    sale_price: float,
    total_costs: float,
    tax_type: str,
) -> float:
    """
    Compute tax on the flip.

    Sole proprietor ('ip'): 15% of sale minus all costs.
    Individual: 13% of the gain up to 2.4M, 15% above.
    """
    if tax_type == 'ip':
        return max(0, (sale_price - total_costs) * IP_TAX_RATE)

    gain = sale_price - purchase_price
    if gain <= 0:
        return 0
    if gain <= INDIVIDUAL_TAX_THRESHOLD:
        return gain * INDIVIDUAL_TAX_LOW
    return (
        INDIVIDUAL_TAX_THRESHOLD * INDIVIDUAL_TAX_LOW
        + (gain - INDIVIDUAL_TAX_THRESHOLD) * INDIVIDUAL_TAX_HIGH
    )


def compute_profit_sharing(net_profit: float, params: FlippingParams) -> ProfitSharing:
    """Split net profit between flipper and investor."""
    if params.participants == 'flipper':
        return ProfitSharing(
            flipper=round_half_away(net_profit),
            investor=0,
            flipper_percent=100,
            investor_percent=0,
        )

    if params.profit_sharing == 'percentage':
        flipper_share = net_profit * (params.flipper_percentage / 100)
        return ProfitSharing(
            flipper=round_half_away(flipper_share),
            investor=round_half_away(net_profit - flipper_share),
            flipper_percent=params.flipper_percentage,
            investor_percent=params.investor_percentage,
        )

    # Fixed payment first, then a percentage of what remains
    fixed = params.fixed_payment_amount
    remaining = net_profit - fixed
    flipper_extra = max(0, remaining * (params.fixed_plus_percentage / 100))
    investor_share = max(0, remaining - flipper_extra)
    return ProfitSharing(
        flipper=round_half_away(fixed + flipper_extra),
        investor=round_half_away(investor_share),
        flipper_percent=params.fixed_plus_percentage,
        flipper_fixed=fixed,
        remaining_profit=round_half_away(remaining),
    )


def compute_profitability(
    price: float,
    area: float,
    params: FlippingParams,
) -> ProfitabilityResult:
    """
    Compute flipping profitability for an object bought at a price.

    Args:
        price: Purchase price
        area: Object area in sqm
        params: Calculation parameters

    Returns:
        ProfitabilityResult

    Raises:
        ProfitabilityError: Non-positive area or renovation speed
        InvalidFinancingError: Bad mortgage setup
    """
    if area <= 0:
        raise ProfitabilityError(f"Area must be positive, got {area}")
    if params.renovation_speed <= 0:
        raise ProfitabilityError(f"Renovation speed must be positive, got {params.renovation_speed}")

    sale_price = params.reference_price_per_meter * area
    renovation_cost = compute_renovation_cost(area, params)

    renovation_days = area / params.renovation_speed
    total_project_days = renovation_days + params.average_exposure_days
    total_project_months = total_project_days / DAYS_PER_MONTH

    financing = compute_financing_costs(price, params, total_project_days)
    total_costs = (
        financing.down_payment
        + renovation_cost
        + params.additional_expenses
        + financing.interest_costs
    )

    gross_profit = sale_price - total_costs
    taxes = compute_taxes(price, sale_price, total_costs, params.tax_type)
    net_profit = gross_profit - taxes

    roi = (net_profit / total_costs) * 100 if total_costs else 0.0
    annual_roi = (roi / total_project_months) * 12 if total_project_months else 0.0

    # Mortgage: the buyer's outlay is the down payment plus financing
    if params.financing == 'mortgage':
        display_purchase = financing.down_payment + financing.interest_costs
    else:
        display_purchase = price

    return ProfitabilityResult(
        purchase_price=display_purchase,
        actual_purchase_price=price,
        sale_price=sale_price,
        renovation_cost=renovation_cost,
        additional_expenses=params.additional_expenses,
        financing_costs=financing.interest_costs,
        total_costs=total_costs,
        gross_profit=gross_profit,
        taxes=taxes,
        net_profit=net_profit,
        roi=round(roi, 2),
        annual_roi=round(annual_roi, 2),
        total_project_days=round_half_away(total_project_days),
        total_project_months=round(total_project_months, 1),
        profit_sharing=compute_profit_sharing(net_profit, params),
        financing=financing,
    )


def compute_target_price(
    price: float,
    area: float,
    target_annual_roi: float,
    params: FlippingParams,
) -> int:
    """
    Find the purchase price that yields a target annual ROI.

    Starts at 80% of the asking price and nudges it by 1% per step until the
    annual ROI is within 0.1 points of the target or 100 steps have run.

    Returns:
        Target purchase price, rounded
    """
    target = price * TARGET_SEARCH_START
    iterations = 0

    while iterations < TARGET_SEARCH_MAX_ITERATIONS:
        result = compute_profitability(target, area, params)
        if abs(result.annual_roi - target_annual_roi) < TARGET_SEARCH_PRECISION:
            break
        if result.annual_roi > target_annual_roi:
            target *= 1.01
        else:
            target *= 0.99
        iterations += 1

    logger.debug(f"Target price {target:,.0f} found after {iterations} iterations")
    return round_half_away(target)


def compute_both_scenarios(
    price: float,
    area: float,
    params: FlippingParams,
) -> ScenarioResult:
    """Profitability at the asking price and at the target-ROI price."""
    current = compute_profitability(price, area, params)
    target_purchase = compute_target_price(price, area, params.target_annual_roi, params)
    target = compute_profitability(target_purchase, area, params)

    return ScenarioResult(
        current_price=current,
        target_price=target,
        target_purchase_price=target_purchase,
        discount_pct=round_half_away((price - target_purchase) / price * 100) if price else 0,
    )


def format_currency(amount: Optional[float]) -> str:
    """Format amount as roubles."""
    if amount is None:
        return "N/A"
    value = round_half_away(amount)
    if value >= 0:
        return f"{value:,} ₽"
    return f"-{abs(value):,} ₽"


def format_scenarios(result: ScenarioResult) -> str:
    """Format both scenarios for display."""
    current = result.current_price
    target = result.target_price
    lines = [
        "Flipping profitability:",
        f"  At asking price {format_currency(current.actual_purchase_price)}:",
        f"    Sale: {format_currency(current.sale_price)}, net profit {format_currency(current.net_profit)}",
        f"    ROI {current.roi:.2f}%, annual {current.annual_roi:.2f}% over {current.total_project_days} days",
        f"  At target price {format_currency(result.target_purchase_price)} (-{result.discount_pct}%):",
        f"    Net profit {format_currency(target.net_profit)}, annual ROI {target.annual_roi:.2f}%",
    ]
    return '\n'.join(lines)
