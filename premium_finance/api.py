from __future__ import annotations

import logging
import os
from dataclasses import asdict
from typing import Annotated, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from premium_finance.calculator import (
    DEFAULT_BORROW_RATE,
    DEFAULT_HORIZON,
    DEFAULT_RATE_OF_RETURN,
    PlanParameters,
    YearlyRate,
    YearRow,
    cash_value_by_year,
    compare_scenarios,
    default_yearly_rates,
    normalize_overrides,
    normalize_policy,
    project,
    project_with_overrides,
    summarize,
)


API_KEY = os.getenv("API_KEY")

DEFAULT_RATE_LIMIT = os.getenv("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() not in ("0", "false", "no")
MAX_HORIZON = int(os.getenv("MAX_HORIZON", "100"))
MAX_AMOUNT = float(os.getenv("MAX_AMOUNT", "10000000000"))
MAX_RATE = float(os.getenv("MAX_RATE", "100"))
MAX_SCENARIOS = int(os.getenv("MAX_SCENARIOS", "6"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logger = logging.getLogger(__name__)
logger.setLevel(LOG_LEVEL)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return get_remote_address(request)


limiter = Limiter(key_func=_client_ip, default_limits=[DEFAULT_RATE_LIMIT], enabled=RATE_LIMIT_ENABLED)

app = FastAPI(
    title="Premium Finance Illustrator",
    description="保费融资方案逐年测算：贷款余额、现金价值、身故金与累计成本。",
    version="0.1.0",
)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


def require_api_key(request: Request):
    if not API_KEY:
        return
    provided = request.headers.get("x-api-key")
    if not provided or provided != API_KEY:
        logger.warning("rejected request to %s: invalid or missing api key", request.url.path)
        raise HTTPException(status_code=401, detail="invalid or missing api key")


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning("rate limit exceeded for %s", _client_ip(request))
    return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})


@app.exception_handler(RequestValidationError)
async def _validation_handler(request: Request, exc: RequestValidationError):
    # 不回显原始输入：NaN / Infinity 无法序列化为 JSON
    errors = [{"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]} for e in exc.errors()]
    logger.warning("rejected request to %s: %d validation error(s)", request.url.path, len(errors))
    return JSONResponse(status_code=422, content={"detail": errors})


class YearlyRateIn(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    year: int = Field(..., ge=1, le=MAX_HORIZON, description="测算年度（从 1 开始）")
    rate_of_return: float = Field(DEFAULT_RATE_OF_RETURN, ge=-MAX_RATE, le=MAX_RATE, description="现金价值收益率百分比，例如 6.5")
    borrow_rate: float = Field(DEFAULT_BORROW_RATE, ge=0, le=MAX_RATE, description="贷款利率百分比，例如 5.5")


class PlanRequest(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    # 保单与融资信息
    death_benefit: float = Field(..., ge=0, le=MAX_AMOUNT, description="基础保额")
    out_of_pocket: float = Field(..., ge=0, le=MAX_AMOUNT, description="每年默认自付金额")
    payment_years: int = Field(..., ge=0, le=MAX_HORIZON, description="自付年数，同时为目标还贷年度")
    premium_years: int = Field(..., ge=0, le=MAX_HORIZON, description="融资缴费年数")
    annual_premium: float = Field(..., ge=0, le=MAX_AMOUNT, description="每年融资保费")
    first_year_fee: float = Field(0, ge=0, le=MAX_AMOUNT, description="首年一次性费用")
    start_age: int = Field(..., ge=0, le=120, description="第 1 年被保险人年龄")
    initial_exposure: float = Field(0, ge=0, le=MAX_AMOUNT, description="额外身故保障基数")

    # 可选参数
    yearly_rates: List[YearlyRateIn] = Field(default_factory=list, description="逐年利率（稀疏），未填年份使用 6.5 / 5.5")
    ledger_policy: str = Field("standard", description="账本口径：standard / capitalized")

    @field_validator("ledger_policy")
    @classmethod
    def _validate_policy(cls, value: str) -> str:
        return normalize_policy(value)

    def to_params(self) -> PlanParameters:
        return PlanParameters(
            death_benefit=self.death_benefit,
            out_of_pocket=self.out_of_pocket,
            payment_years=self.payment_years,
            premium_years=self.premium_years,
            annual_premium=self.annual_premium,
            first_year_fee=self.first_year_fee,
            start_age=self.start_age,
            initial_exposure=self.initial_exposure,
            yearly_rates=tuple(
                YearlyRate(r.year, r.rate_of_return, r.borrow_rate) for r in self.yearly_rates
            ),
            ledger_policy=self.ledger_policy,
        )


class ProjectionRequest(PlanRequest):
    horizon: int = Field(DEFAULT_HORIZON, ge=1, le=MAX_HORIZON, description="测算年数")

    @model_validator(mode="after")
    def _validate_rate_years(self) -> "ProjectionRequest":
        for rate in self.yearly_rates:
            if rate.year > self.horizon:
                raise ValueError(f"yearly_rates year {rate.year} exceeds horizon {self.horizon}")
        return self


OverrideAmount = Annotated[float, Field(ge=0, le=MAX_AMOUNT, allow_inf_nan=False)]


class OverrideProjectionRequest(ProjectionRequest):
    overrides: Dict[int, OverrideAmount] = Field(default_factory=dict, description="按年份覆盖自付金额，例如 {\"3\": 500000}")

    @model_validator(mode="after")
    def _validate_overrides(self) -> "OverrideProjectionRequest":
        for year in self.overrides:
            if year < 1 or year > self.horizon:
                raise ValueError(f"override year {year} must be within 1..{self.horizon}")
        return self


class NamedPlan(PlanRequest):
    name: str = Field(..., min_length=1, max_length=80, description="方案名称")


class ComparisonRequest(BaseModel):
    scenarios: List[NamedPlan] = Field(..., min_length=1, description="参与对比的方案")
    horizon: int = Field(DEFAULT_HORIZON, ge=1, le=MAX_HORIZON, description="测算年数")

    @model_validator(mode="after")
    def _validate_scenarios(self) -> "ComparisonRequest":
        if len(self.scenarios) > MAX_SCENARIOS:
            raise ValueError(f"at most {MAX_SCENARIOS} scenarios can be compared")
        names = [s.name for s in self.scenarios]
        if len(set(names)) != len(names):
            raise ValueError("scenario names must be unique")
        for scenario in self.scenarios:
            for rate in scenario.yearly_rates:
                if rate.year > self.horizon:
                    raise ValueError(
                        f"scenario {scenario.name}: yearly_rates year {rate.year} exceeds horizon {self.horizon}"
                    )
        return self


class YearRowOut(BaseModel):
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


class SummaryOut(BaseModel):
    final_cash_value: float
    total_out_of_pocket: float
    final_net_db: float
    average_annual_cost: float
    payoff_year: Optional[int]


class ProjectionResponse(BaseModel):
    ledger_policy: str
    horizon: int
    summary: SummaryOut
    rows: List[YearRowOut]


class OverrideProjectionResponse(ProjectionResponse):
    # 实际生效的覆盖项（已去掉与默认值相同的条目）
    applied_overrides: Dict[int, float]


class ScenarioSummaryOut(BaseModel):
    name: str
    final_cash_value: float
    death_benefit: float
    net_db: float
    total_cost: float


class ComparisonResponse(BaseModel):
    horizon: int
    scenarios: List[ScenarioSummaryOut]
    cash_value_by_year: Dict[int, Dict[str, float]]


class RatesResponse(BaseModel):
    horizon: int
    yearly_rates: List[YearlyRateIn]


@app.get("/health", tags=["health"])
@limiter.exempt
def health() -> dict:
    return {"status": "ok"}


@app.get("/v1/rates:defaults", tags=["projection"])
@limiter.limit(DEFAULT_RATE_LIMIT)
def default_rates(
    request: Request,
    horizon: int = Query(DEFAULT_HORIZON, ge=1, le=MAX_HORIZON),
    _=Depends(require_api_key),
) -> RatesResponse:
    return RatesResponse(
        horizon=horizon,
        yearly_rates=[YearlyRateIn(**asdict(r)) for r in default_yearly_rates(horizon)],
    )


@app.post(
    "/v1/projections:calc",
    tags=["projection"],
    responses={400: {"description": "Invalid plan parameters"}},
)
@limiter.limit(DEFAULT_RATE_LIMIT)
def calc_projection(request: Request, body: ProjectionRequest, _=Depends(require_api_key)) -> ProjectionResponse:
    try:
        rows = project(body.to_params(), body.horizon)
    except ValueError as e:
        logger.warning("projection rejected: %s", e)
        raise HTTPException(status_code=400, detail=str(e))

    response = _projection_response(rows, body.ledger_policy, body.horizon)
    logger.info(
        "projection computed: policy=%s horizon=%d payoff_year=%s",
        body.ledger_policy,
        body.horizon,
        response.summary.payoff_year,
    )
    return response


@app.post(
    "/v1/projections:overrides",
    tags=["projection"],
    responses={400: {"description": "Invalid plan parameters or overrides"}},
)
@limiter.limit(DEFAULT_RATE_LIMIT)
def calc_projection_with_overrides(
    request: Request,
    body: OverrideProjectionRequest,
    _=Depends(require_api_key),
) -> OverrideProjectionResponse:
    try:
        params = body.to_params()
        overrides = normalize_overrides(params, body.overrides)
        rows = project_with_overrides(params, overrides, body.horizon)
    except ValueError as e:
        logger.warning("override projection rejected: %s", e)
        raise HTTPException(status_code=400, detail=str(e))

    base = _projection_response(rows, body.ledger_policy, body.horizon)
    logger.info(
        "override projection computed: policy=%s horizon=%d overrides=%d payoff_year=%s",
        body.ledger_policy,
        body.horizon,
        len(overrides),
        base.summary.payoff_year,
    )
    return OverrideProjectionResponse(**base.model_dump(), applied_overrides=overrides)


@app.post(
    "/v1/projections:compare",
    tags=["projection"],
    responses={400: {"description": "Invalid scenario parameters"}},
)
@limiter.limit(DEFAULT_RATE_LIMIT)
def calc_comparison(request: Request, body: ComparisonRequest, _=Depends(require_api_key)) -> ComparisonResponse:
    try:
        comparisons = compare_scenarios(
            [(s.name, s.to_params()) for s in body.scenarios],
            body.horizon,
        )
    except ValueError as e:
        logger.warning("comparison rejected: %s", e)
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("comparison computed: scenarios=%d horizon=%d", len(comparisons), body.horizon)
    return ComparisonResponse(
        horizon=body.horizon,
        scenarios=[
            ScenarioSummaryOut(
                name=c.name,
                final_cash_value=float(c.final_cash_value),
                death_benefit=float(c.death_benefit),
                net_db=float(c.net_db),
                total_cost=float(c.total_cost),
            )
            for c in comparisons
        ],
        cash_value_by_year=cash_value_by_year(comparisons),
    )


def _projection_response(rows: List[YearRow], policy: str, horizon: int) -> ProjectionResponse:
    summary = summarize(rows)
    return ProjectionResponse(
        ledger_policy=policy,
        horizon=horizon,
        summary=SummaryOut(**asdict(summary)),
        rows=[YearRowOut(**asdict(row)) for row in rows],
    )
