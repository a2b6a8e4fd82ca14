from pydantic import BaseModel, Field
from typing import Optional, Literal
from datetime import datetime


class DriverApplyIn(BaseModel):
    city_code: Optional[str] = Field(default=None, max_length=16)
    vehicle_type: Optional[str] = Field(default=None, max_length=16)


class HeartbeatIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    heading: Optional[float] = None
    battery_level: Optional[int] = Field(default=None, ge=0, le=100)
    app_version: Optional[str] = Field(default=None, max_length=32)


class DriverProfileOut(BaseModel):
    id: str
    name: Optional[str]
    status: str
    city_code: Optional[str]
    rating: float
    acceptance_rate: float
    matching_priority_score: float
    cancellation_count: int
    current_lat: Optional[float]
    current_lng: Optional[float]


class FareEstimateIn(BaseModel):
    pickup_lat: float = Field(ge=-90, le=90)
    pickup_lng: float = Field(ge=-180, le=180)
    drop_lat: float = Field(ge=-90, le=90)
    drop_lng: float = Field(ge=-180, le=180)
    ride_type_id: str
    city_code: Optional[str] = None


class FareEstimateOut(BaseModel):
    ride_type_id: str
    ride_type_name: str
    distance_km: float
    duration_minutes: int
    base_fare: float
    distance_charge: int
    time_charge: int
    surge_multiplier: float
    surge_charge: int
    estimated_fare: int
    min_fare: float
    currency: str
    pricing_version: str


class BookingCreateIn(BaseModel):
    pickup_address: str = Field(max_length=256)
    pickup_short_name: Optional[str] = Field(default=None, max_length=64)
    pickup_lat: float = Field(ge=-90, le=90)
    pickup_lng: float = Field(ge=-180, le=180)
    drop_address: str = Field(max_length=256)
    drop_short_name: Optional[str] = Field(default=None, max_length=64)
    drop_lat: float = Field(ge=-90, le=90)
    drop_lng: float = Field(ge=-180, le=180)
    ride_type_id: str
    timing_mode: Literal["now", "tomorrow", "scheduled"] = "now"
    scheduled_time: Optional[datetime] = None
    distance_km: float = Field(ge=0)
    duration_minutes: float = Field(ge=0)
    estimated_fare: int = Field(ge=0)
    surge_multiplier: Optional[float] = Field(default=None, ge=1.0)
    payment_method: Optional[str] = Field(default="cash", max_length=16)
    city_code: Optional[str] = Field(default=None, max_length=16)


class BookingCreatedOut(BaseModel):
    booking_id: str
    status: str
    otp: str
    created_at: datetime


class BookingOut(BaseModel):
    id: str
    status: str
    rider_id: str
    driver_id: Optional[str]
    city_code: str
    ride_type_id: str
    timing_mode: str
    scheduled_time: Optional[datetime]
    estimated_fare: int
    final_fare: Optional[int]
    tip_amount: int
    surge_multiplier: float
    payment_method: str
    otp: Optional[str] = None
    requested_at: datetime
    cancellation_reason: Optional[str]


class MatchIn(BaseModel):
    search_radius_km: Optional[float] = Field(default=None, gt=0, le=50)
    max_attempts: Optional[int] = Field(default=None, ge=1, le=50)


class MatchOut(BaseModel):
    matched: bool
    attempts_made: int
    driver_id: Optional[str] = None
    driver_name: Optional[str] = None
    driver_rating: Optional[float] = None
    eta_minutes: Optional[int] = None


class StatusUpdateIn(BaseModel):
    new_status: str
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)
    metadata: Optional[dict] = None


class StatusUpdateOut(BaseModel):
    booking_id: str
    old_status: str
    new_status: str
    updated_at: datetime


class VerifyCodeIn(BaseModel):
    otp: str = Field(min_length=4, max_length=4)
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)


class CancelIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=256)
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)


class CancelOut(BaseModel):
    booking_id: str
    old_status: str
    new_status: str
    cancellation_fee: int
    cancelled_at: Optional[datetime]


class FinalizeIn(BaseModel):
    actual_distance_km: Optional[float] = Field(default=None, ge=0)
    actual_duration_minutes: Optional[float] = Field(default=None, ge=0)
    tip_amount: int = Field(default=0, ge=0)
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)


class FinalizeOut(BaseModel):
    booking_id: str
    estimated_fare: int
    final_fare: int
    tip_amount: int
    total_amount: int
    payment_id: str
    status: str


class OfferRespondIn(BaseModel):
    accept: bool
