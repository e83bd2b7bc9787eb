# moobee/infrastructure/repositories.py
"""Entity repositories, re-exported for application services."""

from .repositories_assignment import AssignmentRepo, ResponseRepo
from .repositories_base import BaseRepository
from .repositories_campaign import CampaignRepo
from .repositories_people import EmployeeRepo, RoleRepo
from .repositories_result import EmployeeSkillScoreRepo, ResultRepo
from .repositories_template import TemplateRepo
from .repositories_usage import LLMUsageRepo

__all__ = [
    "AssignmentRepo",
    "BaseRepository",
    "CampaignRepo",
    "EmployeeRepo",
    "EmployeeSkillScoreRepo",
    "LLMUsageRepo",
    "ResponseRepo",
    "ResultRepo",
    "RoleRepo",
    "TemplateRepo",
]
