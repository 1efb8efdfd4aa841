from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Credentials(BaseModel):
    """Login for the time-tracking application. Supplied per run, never persisted."""

    email: str = ""
    password: str = Field(default="", repr=False)

    def is_complete(self) -> bool:
        return bool(self.email.strip() and self.password)


class DailyHours(_CamelModel):
    date: str  # DD/MM/YYYY
    hours: float


class EntityWithoutActivity(_CamelModel):
    id: str
    name: str
    email: str = ""
    last_activity_date: Optional[str] = Field(default=None, alias="lastActivityDate")
    total_hours_trailing_window: str = Field(default="0 h 0 min", alias="totalHoursTrailingWindow")
    days_since_last_activity: Optional[int] = Field(default=None, alias="daysSinceLastActivity")
    daily_hours: List[DailyHours] = Field(default_factory=list, alias="dailyHours")


class EntityChartSeries(_CamelModel):
    id: str
    name: str
    email: str = ""
    daily_hours: List[DailyHours] = Field(default_factory=list, alias="dailyHours")
    total_hours_trailing_window: str = Field(default="0 h 0 min", alias="totalHoursTrailingWindow")


class ProjectChartSeries(EntityChartSeries):
    client: Optional[str] = None


class DateRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    to: str


class AbsenceData(_CamelModel):
    date_range: DateRange = Field(alias="dateRange")
    entities_without_activity: List[EntityWithoutActivity] = Field(
        default_factory=list, alias="entitiesWithoutActivity"
    )
    total_count: int = Field(default=0, alias="totalCount")
    checked_at: str = Field(alias="checkedAt")


class ChartData(_CamelModel):
    date_range: DateRange = Field(alias="dateRange")
    series: List[EntityChartSeries] = Field(default_factory=list)
    total_count: int = Field(default=0, alias="totalCount")
    checked_at: str = Field(alias="checkedAt")


class ProjectChartData(_CamelModel):
    date_range: DateRange = Field(alias="dateRange")
    series: List[ProjectChartSeries] = Field(default_factory=list)
    total_count: int = Field(default=0, alias="totalCount")
    checked_at: str = Field(alias="checkedAt")


class CheckHoursResponse(BaseModel):
    success: bool
    data: Optional[AbsenceData] = None
    error: Optional[str] = None


class ChartsResponse(BaseModel):
    success: bool
    data: Optional[ChartData] = None
    error: Optional[str] = None


class ProjectChartsResponse(BaseModel):
    success: bool
    data: Optional[ProjectChartData] = None
    error: Optional[str] = None
