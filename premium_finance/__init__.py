"""保费融资（Premium Finance）逐年测算 Python 包。

常用导入：
    from premium_finance import PlanParameters, project, project_with_overrides

HTTP 服务：
    uvicorn premium_finance.api:app
"""

from .calculator import (
    PlanParameters,
    ScenarioComparison,
    SummaryStats,
    YearlyRate,
    YearRow,
    compare_scenarios,
    default_yearly_rates,
    normalize_overrides,
    project,
    project_with_overrides,
    summarize,
)

__all__ = [
    "PlanParameters",
    "ScenarioComparison",
    "SummaryStats",
    "YearlyRate",
    "YearRow",
    "compare_scenarios",
    "default_yearly_rates",
    "normalize_overrides",
    "project",
    "project_with_overrides",
    "summarize",
]
