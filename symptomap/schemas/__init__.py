"""
SymptoMap — Request/Response Schemas
Pydantic models validated by FastAPI before a handler runs. Output models use
the camelCase field names the map front end reads.
"""
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, field_validator

from symptomap.config import DEFAULT_HORIZON_DAYS, MAX_HORIZON_DAYS

RiskLevel = Literal["low", "medium", "high", "critical"]

# ============================================================
# GEOGRAPHY
# ============================================================
class GeographicBounds(BaseModel):
    north: float = Field(..., ge=-90, le=90)
    south: float = Field(..., ge=-90, le=90)
    east: float = Field(..., ge=-180, le=180)
    west: float = Field(..., ge=-180, le=180)

    def contains(self, latitude: float, longitude: float) -> bool:
        return self.south <= latitude <= self.north and self.west <= longitude <= self.east

# ============================================================
# OUTBREAKS
# ============================================================
class OutbreakCreate(BaseModel):
    disease_type: str = Field(..., min_length=1, max_length=100)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    case_count: int = Field(..., gt=0)
    severity_level: int = Field(..., ge=1, le=5)
    confidence: float = Field(0.8, ge=0, le=1)
    symptoms: List[str] = Field(default_factory=list)
    location_name: Optional[str] = Field(None, max_length=255)


class OutbreakUpdate(BaseModel):
    disease_type: Optional[str] = Field(None, min_length=1, max_length=100)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    case_count: Optional[int] = Field(None, gt=0)
    severity_level: Optional[int] = Field(None, ge=1, le=5)
    confidence: Optional[float] = Field(None, ge=0, le=1)
    symptoms: Optional[List[str]] = None
    location_name: Optional[str] = Field(None, max_length=255)


class OutbreakCluster(BaseModel):
    id: str
    latitude: float
    longitude: float
    caseCount: int
    severityLevel: int = Field(..., ge=1, le=5)
    diseaseType: str
    confidence: float
    lastUpdated: str
    symptoms: List[str] = []
    locationName: Optional[str] = None

# ============================================================
# PREDICTIONS
# ============================================================
class PredictionCreate(BaseModel):
    bounds_north: float = Field(..., ge=-90, le=90)
    bounds_south: float = Field(..., ge=-90, le=90)
    bounds_east: float = Field(..., ge=-180, le=180)
    bounds_west: float = Field(..., ge=-180, le=180)
    horizon_days: int = Field(DEFAULT_HORIZON_DAYS, ge=1, le=MAX_HORIZON_DAYS)
    disease_type: Optional[str] = None

    def region(self) -> GeographicBounds:
        return GeographicBounds(north=self.bounds_north, south=self.bounds_south,
                                east=self.bounds_east, west=self.bounds_west)


class ConfidenceInterval(BaseModel):
    lower: int
    upper: int


class PredictionDataPoint(BaseModel):
    date: str
    predictedCases: int
    confidenceInterval: ConfidenceInterval
    riskLevel: RiskLevel


class MLPrediction(BaseModel):
    id: str
    region: GeographicBounds
    predictions: List[PredictionDataPoint]
    confidenceScore: float
    modelVersion: str
    generatedAt: str


class ModelInfo(BaseModel):
    id: str
    name: str
    version: str
    disease_type: str
    accuracy: float
    last_trained: str
    status: Literal["active", "training", "deprecated"]


class ModelPerformance(BaseModel):
    model_id: str
    mape: float
    rmse: float
    accuracy: float
    last_evaluated: str

# ============================================================
# AUTH
# ============================================================
class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1)


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    name: str = Field("", max_length=255)
    organization_id: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email_shape(cls, v: str) -> str:
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("must be a valid email address")
        return v.strip().lower()


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=255)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=128)


class PasswordReset(BaseModel):
    new_password: str = Field(..., min_length=8, max_length=128)

# ============================================================
# USERS (admin)
# ============================================================
Role = Literal["viewer", "analyst", "admin", "super_admin"]


class UserCreate(RegisterRequest):
    role: Role = "viewer"


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    role: Optional[Role] = None
    organization_id: Optional[str] = None
    is_active: Optional[bool] = None

# ============================================================
# SYMPTOMS
# ============================================================
class SymptomLocation(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    city: str = Field(..., min_length=1, max_length=128)
    country: str = Field(..., min_length=1, max_length=128)


class SymptomSubmission(BaseModel):
    location: SymptomLocation
    description: str = Field(..., min_length=1)
    severity: float = Field(..., ge=1, le=10)
    symptoms: List[str] = Field(default_factory=list)
    age_range: Optional[str] = None
    has_recent_travel: bool = False


class SymptomAnalysisRequest(BaseModel):
    symptoms: str = Field(..., min_length=1)
    severity: float

# ============================================================
# SYSTEM
# ============================================================
class SystemNotice(BaseModel):
    kind: Literal["maintenance", "error"]
    message: str = Field(..., min_length=1, max_length=1000)
