from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

_NULLISH = {"", "null", "none", "n/a"}
_NO_SUBSPECIES = {"not determined", "unable to determine from image", "monotypic"}


def _none_if_null(value: Any) -> Any:
    if isinstance(value, str) and value.strip().lower() in _NULLISH:
        return None
    return value


class Taxonomy(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    kingdom: Optional[str] = None
    phylum: Optional[str] = None
    class_: Optional[str] = Field(None, alias="class")
    order: Optional[str] = None
    family: Optional[str] = None
    subfamily: Optional[str] = None
    genus: Optional[str] = None
    species: Optional[str] = None
    subspecies: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def normalize_nulls(cls, value: Any) -> Any:
        return _none_if_null(value)


class IucnStatus(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    global_: Optional[str] = Field(None, alias="global")
    local: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def normalize_nulls(cls, value: Any) -> Any:
        return _none_if_null(value)


class Identification(BaseModel):
    """Successful classifier answer; names may be corrected by cross-checks later."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    identified: bool = True
    scientific_name: str = Field(alias="scientificName")
    common_name: str = Field("", alias="commonName")
    identification_level: Optional[str] = Field(None, alias="identificationLevel")
    confidence: Optional[float] = None
    taxonomy: Taxonomy = Field(default_factory=Taxonomy)
    confidence_levels: Dict[str, Optional[float]] = Field(default_factory=dict, alias="confidenceLevels")
    similar_species: List[Union[str, Dict[str, Any]]] = Field(default_factory=list, alias="similarSpeciesRuledOut")
    reasoning: Optional[str] = Field(None, alias="identificationReasoning")
    sex: Optional[str] = None
    life_stage: Optional[str] = Field(None, alias="lifeStage")
    morph: Optional[str] = None
    migratory_status: Optional[str] = Field(None, alias="migratoryStatus")
    description: Optional[str] = None
    geographic_range: Optional[str] = Field(None, alias="geographicRange")
    iucn_status: Optional[IucnStatus] = Field(None, alias="iucnStatus")
    conservation_status: Optional[str] = Field(None, alias="conservationStatus")

    @field_validator(
        "identification_level", "sex", "life_stage", "morph", "migratory_status",
        "description", "geographic_range", "reasoning", "conservation_status", mode="before",
    )
    @classmethod
    def normalize_nulls(cls, value: Any) -> Any:
        return _none_if_null(value)

    @field_validator("taxonomy", "confidence_levels", "similar_species", mode="before")
    @classmethod
    def empty_if_null(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or isinstance(value, str):
            return [] if info.field_name == "similar_species" else {}
        return value

    @field_validator("iucn_status", mode="before")
    @classmethod
    def iucn_from_string(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"global": value}
        return value

    @field_validator("scientific_name", "common_name", mode="before")
    @classmethod
    def collapse_spaces(cls, value: Any) -> str:
        if value is None:
            return ""
        return " ".join(str(value).split())

    @property
    def is_bird(self) -> bool:
        return (self.taxonomy.class_ or "").strip().lower() == "aves"

    @property
    def valid_subspecies(self) -> Optional[str]:
        sub = self.taxonomy.subspecies
        if not sub or sub.lower() in _NO_SUBSPECIES or "unknown" in sub.lower():
            return None
        return sub


class QualityFailure(BaseModel):
    """Classifier declined to identify; ``reason`` is an opaque code."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    identified: bool = False
    reason: str = "unknown"
    quality_issue: Optional[str] = Field(None, alias="qualityIssue")
    suggestion: Optional[str] = None

    @field_validator("quality_issue", "suggestion", mode="before")
    @classmethod
    def normalize_nulls(cls, value: Any) -> Any:
        return _none_if_null(value)

    @field_validator("reason", mode="before")
    @classmethod
    def normalize_reason(cls, value: Any) -> str:
        return str(value or "unknown").strip().lower() or "unknown"


ClassifierResult = Union[Identification, QualityFailure]


def parse_classifier_payload(data: Dict[str, Any]) -> ClassifierResult:
    """Validate a classifier JSON object into one of the two outcomes."""
    if data.get("identified") is True and data.get("scientificName"):
        return Identification.model_validate(data)
    if data.get("identified") is True:
        return QualityFailure(reason="no_animal", qualityIssue="Классификатор не вернул научное название")
    return QualityFailure.model_validate(data)


class CachedResult(BaseModel):
    """What a follow-up button can still read after delivery."""

    identification: Identification
    image: Optional[bytes] = None
    photo_count: int = 1
