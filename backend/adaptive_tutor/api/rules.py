"""Mastery rule configuration endpoints."""

import logging
from typing import List

from fastapi import APIRouter, Depends, Path

from ..mastery.rules import MasteryRules, MasteryRuleService, RuleSetRecord
from .deps import get_rule_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rules", tags=["Mastery Rules"])


@router.get("", response_model=List[RuleSetRecord])
async def list_rules(rules: MasteryRuleService = Depends(get_rule_service)):
    """All configured rule sets (defaults are not listed)."""
    return await rules.list_rules()


@router.get("/{subject}/{grade}", response_model=RuleSetRecord)
async def get_rules(
    subject: str,
    grade: int = Path(ge=0, le=12),
    rules: MasteryRuleService = Depends(get_rule_service),
):
    """Effective rules for a subject and grade (configured or default)."""
    return await rules.get_rules(subject, grade)


@router.put("/{subject}/{grade}", response_model=RuleSetRecord)
async def put_rules(
    body: MasteryRules,
    subject: str,
    grade: int = Path(ge=0, le=12),
    rules: MasteryRuleService = Depends(get_rule_service),
):
    """Create or replace the rules for a subject and grade (bounds checked, 422 otherwise)."""
    return await rules.set_rules(subject, grade, body)


@router.delete("/{subject}/{grade}", response_model=RuleSetRecord)
async def delete_rules(
    subject: str,
    grade: int = Path(ge=0, le=12),
    rules: MasteryRuleService = Depends(get_rule_service),
):
    """Revert to the defaults; returns the rules now in effect."""
    await rules.reset_rules(subject, grade)
    return await rules.get_rules(subject, grade)
