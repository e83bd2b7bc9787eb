from __future__ import annotations

from dataclasses import dataclass, field

# --------------------------------------------------------------------------
# Answers: one tagged variant per response shape
# --------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LikertAnswer:
    question_id: int
    value: int
    kind: str = "likert"


@dataclass(frozen=True, slots=True)
class BooleanAnswer:
    question_id: int
    value: bool
    kind: str = "boolean"


@dataclass(frozen=True, slots=True)
class ChoiceAnswer:
    question_id: int
    option_id: int
    kind: str = "choice"


@dataclass(frozen=True, slots=True)
class MultiChoiceAnswer:
    question_id: int
    option_ids: frozenset[int]
    kind: str = "multi_choice"


@dataclass(frozen=True, slots=True)
class TextAnswer:
    question_id: int
    value: str
    kind: str = "text"


Answer = LikertAnswer | BooleanAnswer | ChoiceAnswer | MultiChoiceAnswer | TextAnswer


# --------------------------------------------------------------------------
# Weight snapshot captured at completion time
# --------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class OptionSpec:
    id: int
    value: float


@dataclass(frozen=True, slots=True)
class QuestionSpec:
    id: int
    category: str | None
    response_kind: str
    scale_min: int | None = None
    scale_max: int | None = None
    weight: float = 1.0
    is_required: bool = True
    is_reversed: bool = False
    options: tuple[OptionSpec, ...] = ()

    def option(self, option_id: int) -> OptionSpec | None:
        for opt in self.options:
            if opt.id == option_id:
                return opt
        return None


@dataclass(frozen=True, slots=True)
class TargetMapping:
    question_id: int
    target_type: str  # "area" | "soft_skill"
    target: str  # area code, or soft skill id as text
    weight: float = 1.0
    is_reversed: bool = False


@dataclass(frozen=True, slots=True)
class SkillRequirement:
    soft_skill_id: int
    priority: int
    weight: float
    is_required: bool
    min_score: float
    target_score: float


@dataclass(frozen=True, slots=True)
class RolePolicy:
    role_id: int
    role_name: str
    is_primary: bool
    requirements: tuple[SkillRequirement, ...] = ()

    def requirement_for(self, soft_skill_id: int) -> SkillRequirement | None:
        for req in self.requirements:
            if req.soft_skill_id == soft_skill_id:
                return req
        return None


@dataclass(slots=True)
class PopulationSnapshot:
    """Prior completed scores within the tenant, frozen at completion time."""

    overall: tuple[float, ...] = ()
    skills: dict[str, tuple[float, ...]] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ScoringSettings:
    percentile_floor: int = 10
    required_penalty: float = 0.7
    default_target_score: float = 70.0
    insight_limit: int = 3


@dataclass(slots=True)
class WeightSnapshot:
    template_id: int
    template_version: int
    kind: str
    questions: tuple[QuestionSpec, ...]
    mappings: tuple[TargetMapping, ...] = ()
    skill_names: dict[str, str] = field(default_factory=dict)
    roles: tuple[RolePolicy, ...] = ()
    population: PopulationSnapshot = field(default_factory=PopulationSnapshot)
    settings: ScoringSettings = field(default_factory=ScoringSettings)

    def question(self, question_id: int) -> QuestionSpec | None:
        for q in self.questions:
            if q.id == question_id:
                return q
        return None

    @property
    def primary_role(self) -> RolePolicy | None:
        for role in self.roles:
            if role.is_primary:
                return role
        return self.roles[0] if self.roles else None


# --------------------------------------------------------------------------
# Scored output
# --------------------------------------------------------------------------


@dataclass(slots=True)
class CategoryScore:
    code: str
    average: float  # 0..100
    weighted: float  # sum of normalized x weight, on the 0..100 scale
    total_weight: float
    count: int
    level: str


@dataclass(slots=True)
class SkillScore:
    soft_skill_id: int
    name: str
    raw: float
    weighted: float
    percentile: float | None
    level: str
    confidence: float
    priority: int | None = None
    min_score: float | None = None
    target_score: float | None = None
    meets_minimum: bool | None = None
    meets_target: bool | None = None


@dataclass(slots=True)
class RoleFit:
    role_id: int
    role_name: str
    is_primary: bool
    score: float
    skills_considered: int
    penalized_skills: list[int] = field(default_factory=list)
    critical_fit: float | None = None
    message: str = ""


@dataclass(slots=True)
class Insight:
    target: str
    label: str
    score: float
    target_score: float
    priority: int | None = None
    gap: float = 0.0


@dataclass(slots=True)
class Recommendation:
    target: str
    type: str  # training | mentoring | reading | stretch_project | development_plan
    title: str
    description: str
    impact: str  # low | medium | high
    effort: str  # easy | medium | hard
    link: str | None = None


@dataclass(slots=True)
class ScoredResult:
    kind: str
    family: str
    overall_score: float
    percentile: float | None
    categories: dict[str, CategoryScore] = field(default_factory=dict)
    soft_skills: dict[int, SkillScore] = field(default_factory=dict)
    role_fit: float | None = None
    role_fits: list[RoleFit] = field(default_factory=list)
    strengths: list[Insight] = field(default_factory=list)
    improvements: list[Insight] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)
    sentiment: str | None = None
    answered_count: int = 0
    scored_count: int = 0
