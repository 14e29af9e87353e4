from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple


# 账本口径：标准（不含费用、利息全额滚入）/ 资本化（费用融资、自付额先抵利息）
POLICY_STANDARD = "standard"
POLICY_CAPITALIZED = "capitalized"

DEFAULT_RATE_OF_RETURN = 6.5
DEFAULT_BORROW_RATE = 5.5
DEFAULT_HORIZON = 30


@dataclass(frozen=True)
class YearlyRate:
    """单年利率设置。

    字段说明：
        year: 测算年度（从 1 开始）。
        rate_of_return: 现金价值收益率（百分比），例如 6.5 表示 6.5%。
        borrow_rate: 贷款利率（百分比）。
    """

    year: int
    rate_of_return: float = DEFAULT_RATE_OF_RETURN
    borrow_rate: float = DEFAULT_BORROW_RATE


@dataclass(frozen=True)
class PlanParameters:
    """保费融资方案输入参数。

    字段说明：
        death_benefit: 基础保单保额。
        out_of_pocket: 每年默认自付金额。
        payment_years: 最后一个自付年度，同时也是目标还贷年度。
        premium_years: 最后一个融资缴费年度。
        annual_premium: 每个缴费年度融资投入保单的保费。
        first_year_fee: 首年一次性费用。
        start_age: 第 1 年被保险人年龄。
        initial_exposure: 额外身故保障基数，按收益率复利增长。
        yearly_rates: 稀疏的逐年利率；未设置的年份使用 6.5 / 5.5。
        ledger_policy: 账本口径，standard（默认）或 capitalized，见 project()。
    """

    death_benefit: float
    out_of_pocket: float
    payment_years: int
    premium_years: int
    annual_premium: float
    first_year_fee: float
    start_age: int
    initial_exposure: float
    yearly_rates: Sequence[YearlyRate] = ()
    ledger_policy: str = POLICY_STANDARD


@dataclass
class YearRow:
    """单年度账本明细。

    字段说明：
        year / age: 测算年度与当年年龄。
        premium / fee / oop / withdrawal: 当年保费、费用、自付额、还贷提取。
        rate_of_return / borrow_rate: 当年实际使用的利率。
        boy_bal / interest_charge / eoy_bal: 年初贷款余额、当年利息、年末贷款余额（还清后为 0）。
        cash_value: 年末现金价值。
        db: 身故金总额。
        net_db: 扣除未还贷款并加上现金价值后的净身故金。
        collateral: 贷款余额超出现金价值的差额（最低为 0）。
        total_cost: 累计自付额（capitalized 口径含首年费用）。
    """

    year: int
    age: int
    premium: float
    fee: float
    oop: float
    withdrawal: float
    rate_of_return: float
    borrow_rate: float
    boy_bal: float
    interest_charge: float
    eoy_bal: float
    cash_value: float
    db: float
    net_db: float
    collateral: float
    total_cost: float


@dataclass
class SummaryStats:
    """汇总指标（取最后一年）。payoff_year 为实际还清贷款的年度，未还清为 None。"""

    final_cash_value: float
    total_out_of_pocket: float
    final_net_db: float
    average_annual_cost: float
    payoff_year: Optional[int]


@dataclass
class ScenarioComparison:
    """多方案对比中单个方案的期末指标及完整明细。"""

    name: str
    final_cash_value: float
    death_benefit: float
    net_db: float
    total_cost: float
    rows: List[YearRow]


def normalize_policy(policy: str) -> str:
    # 统一并校验账本口径，支持一些别名。
    if not policy:
        return POLICY_STANDARD
    normalized = policy.strip().lower()
    if normalized in ("standard", "simple", "non_capitalized"):
        return POLICY_STANDARD
    if normalized in ("capitalized", "capitalised", "capitalized_interest"):
        return POLICY_CAPITALIZED
    raise ValueError(f"unsupported ledger policy: {policy}")


def default_yearly_rates(horizon: int = DEFAULT_HORIZON) -> List[YearlyRate]:
    return [YearlyRate(year) for year in range(1, horizon + 1)]


def build_rate_table(yearly_rates: Sequence[YearlyRate]) -> Dict[int, Tuple[float, float]]:
    # 按年份建索引；同一年份重复出现时以最后一条为准
    return {r.year: (r.rate_of_return, r.borrow_rate) for r in yearly_rates}


def resolve_rates(table: Mapping[int, Tuple[float, float]], year: int) -> Tuple[float, float]:
    return table.get(year, (DEFAULT_RATE_OF_RETURN, DEFAULT_BORROW_RATE))


def scheduled_out_of_pocket(params: PlanParameters, year: int) -> float:
    return params.out_of_pocket if year <= params.payment_years else 0.0


def normalize_overrides(params: PlanParameters, overrides: Mapping[int, float]) -> Dict[int, float]:
    """去掉与当年计划自付额相同的覆盖项。

    表格编辑时只保留真正改过的年份；改回默认值的条目必须删掉，
    否则之后修改 out_of_pocket 时它会继续生效。
    """
    return {
        year: amount
        for year, amount in sorted(overrides.items())
        if amount != scheduled_out_of_pocket(params, year)
    }


def project(params: PlanParameters, horizon: int = DEFAULT_HORIZON) -> List[YearRow]:
    """逐年测算第 1 年到第 horizon 年的账本。

    standard 口径：
        boy_bal = premium - oop（第 1 年） / 上年 eoy_bal + premium - oop
        eoy_bal = boy_bal + boy_bal * borrow_rate
        total_cost = 累计 oop
    capitalized 口径：
        boy_bal = premium + fee（第 1 年） / 上年 eoy_bal + premium
        eoy_bal = boy_bal + max(0, interest - oop)
        total_cost = fee + 累计 oop

    现金价值、payment_years 当年的一次性还贷、身故金与 collateral 两种口径相同。
    还清后贷款账户关闭：之后年份的自付额（含覆盖值）只计入 total_cost，不再冲减任何贷款余额。
    不做输入校验，异常参数按算式原样传导。
    """
    return _run_ledger(params, horizon, lambda year: scheduled_out_of_pocket(params, year))


def project_with_overrides(
    params: PlanParameters,
    overrides: Mapping[int, float],
    horizon: int = DEFAULT_HORIZON,
) -> List[YearRow]:
    # 覆盖某些年份的自付额后整表重算，早年的改动会一路传导到后续年份的贷款余额与累计成本
    def oop_for(year: int) -> float:
        if year in overrides:
            return overrides[year]
        return scheduled_out_of_pocket(params, year)

    return _run_ledger(params, horizon, oop_for)


def _run_ledger(
    params: PlanParameters,
    horizon: int,
    oop_for: Callable[[int], float],
) -> List[YearRow]:
    policy = normalize_policy(params.ledger_policy)
    rates = build_rate_table(params.yearly_rates)

    rows: List[YearRow] = []
    prev_cash_value = 0.0
    prev_eoy_bal = 0.0
    loan_closed = False
    total_cost = params.first_year_fee if policy == POLICY_CAPITALIZED else 0.0

    for year in range(1, horizon + 1):
        rate_of_return, borrow_rate = resolve_rates(rates, year)
        growth = 1 + rate_of_return / 100.0

        premium = params.annual_premium if year <= params.premium_years else 0.0
        fee = params.first_year_fee if year == 1 else 0.0
        oop = oop_for(year)

        # 还清后贷款账户关闭，不再滚动
        if loan_closed:
            boy_bal = interest_charge = eoy_bal = 0.0
        elif policy == POLICY_CAPITALIZED:
            boy_bal = prev_eoy_bal + premium + fee
            interest_charge = boy_bal * borrow_rate / 100.0
            eoy_bal = boy_bal + max(0.0, interest_charge - oop)
        else:
            boy_bal = prev_eoy_bal + premium - oop
            interest_charge = boy_bal * borrow_rate / 100.0
            eoy_bal = boy_bal + interest_charge

        cash_value = prev_cash_value * growth + premium - fee

        withdrawal = 0.0
        # 仅在目标年度、且现金价值足以覆盖贷款时一次性还清
        if year == params.payment_years and cash_value >= eoy_bal:
            withdrawal = eoy_bal
        cash_value -= withdrawal
        paid_off = withdrawal > 0

        db = params.death_benefit + params.initial_exposure * growth ** (year - 1)
        outstanding = 0.0 if paid_off else eoy_bal
        net_db = db - outstanding + cash_value
        collateral = 0.0 if paid_off or loan_closed else max(0.0, eoy_bal - cash_value)
        total_cost += oop

        rows.append(
            YearRow(
                year=year,
                age=params.start_age + year - 1,
                premium=premium,
                fee=fee,
                oop=oop,
                withdrawal=withdrawal,
                rate_of_return=rate_of_return,
                borrow_rate=borrow_rate,
                boy_bal=boy_bal,
                interest_charge=interest_charge,
                eoy_bal=outstanding,
                cash_value=cash_value,
                db=db,
                net_db=net_db,
                collateral=collateral,
                total_cost=total_cost,
            )
        )

        prev_cash_value = cash_value
        prev_eoy_bal = outstanding
        loan_closed = loan_closed or paid_off

    return rows


def find_payoff_year(rows: Sequence[YearRow]) -> Optional[int]:
    for row in rows:
        if row.withdrawal > 0:
            return row.year
    return None


def summarize(rows: Sequence[YearRow]) -> SummaryStats:
    # 汇总卡片：期末现金价值、累计自付、期末净身故金、年均成本
    if not rows:
        return SummaryStats(
            final_cash_value=0.0,
            total_out_of_pocket=0.0,
            final_net_db=0.0,
            average_annual_cost=0.0,
            payoff_year=None,
        )

    last = rows[-1]
    return SummaryStats(
        final_cash_value=last.cash_value,
        total_out_of_pocket=last.total_cost,
        final_net_db=last.net_db,
        average_annual_cost=last.total_cost / len(rows),
        payoff_year=find_payoff_year(rows),
    )


def compare_scenarios(
    scenarios: Sequence[Tuple[str, PlanParameters]],
    horizon: int = DEFAULT_HORIZON,
) -> List[ScenarioComparison]:
    # 每个方案独立跑一遍，取最后一年做横向对比
    results: List[ScenarioComparison] = []
    for name, params in scenarios:
        rows = project(params, horizon)
        last = rows[-1] if rows else None
        results.append(
            ScenarioComparison(
                name=name,
                final_cash_value=last.cash_value if last else 0.0,
                death_benefit=last.db if last else 0.0,
                net_db=last.net_db if last else 0.0,
                total_cost=last.total_cost if last else 0.0,
                rows=rows,
            )
        )
    return results


def cash_value_by_year(comparisons: Sequence[ScenarioComparison]) -> Dict[int, Dict[str, float]]:
    # 现金价值走势：year -> {方案名: 现金价值}
    series: Dict[int, Dict[str, float]] = {}
    for comparison in comparisons:
        for row in comparison.rows:
            series.setdefault(row.year, {})[comparison.name] = row.cash_value
    return series
