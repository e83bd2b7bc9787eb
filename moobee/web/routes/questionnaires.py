"""
Template, campaign and assignment endpoints, mounted once per instrument family.

``/assessments`` and ``/engagement`` expose the same shape; the family decides
which template kinds are visible under each prefix.
"""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Body, Depends, Query, Response, status
from sqlalchemy.orm import Session

from moobee.application import assignments as assignment_ops
from moobee.application import campaigns as campaign_ops
from moobee.application import templates as template_ops
from moobee.application.generation import QuestionGenerator
from moobee.application.notifications import NotificationDispatcher
from moobee.domain.instruments import Family, family_of
from moobee.domain.schemas import (
    CampaignInput,
    ConflictCheckInput,
    GenerationRequest,
    SubmissionInput,
    TemplateInput,
    TemplateUpdateInput,
)
from moobee.infrastructure.exceptions import ValidationError
from moobee.web.dependencies import (
    Principal,
    get_db_session,
    get_dispatcher,
    get_employee_id,
    get_generator,
    get_principal,
    require_admin,
)
from moobee.web.schemas import (
    Assignment,
    Campaign,
    CampaignCreated,
    DeleteResult,
    DuplicateRequest,
    Envelope,
    Page,
    PublishRequest,
    Result,
    SubmissionResult,
    TemplateDetail,
    TemplateSummary,
)


def build_router(family: Family, prefix: str) -> APIRouter:
    router = APIRouter(prefix=prefix, tags=[family])

    # ------------------------------------------------------------ templates

    @router.get("/templates", response_model=Envelope[Page[TemplateSummary]])
    def list_templates(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        kind: str | None = Query(None, alias="type"),
        search: str | None = Query(None, max_length=255),
        is_active: bool | None = Query(None, alias="isActive"),
        order_by: Literal["created_at", "name"] = Query("created_at", alias="orderBy"),
        order: Literal["asc", "desc"] = Query("desc"),
        principal: Principal = Depends(get_principal),
        db: Session = Depends(get_db_session),
    ) -> Envelope[Page[TemplateSummary]]:
        listing = template_ops.list_templates(
            db,
            principal.tenant_id,
            family,
            {
                "page": page,
                "limit": limit,
                "kind": kind,
                "search": search,
                "is_active": is_active,
                "order_by": order_by,
                "order": order,
            },
        )
        listing["items"] = [TemplateSummary.model_validate(t) for t in listing["items"]]
        return Envelope(data=Page[TemplateSummary](**listing))

    @router.get("/templates/{template_id}", response_model=Envelope[TemplateDetail])
    def get_template(
        template_id: int,
        principal: Principal = Depends(get_principal),
        db: Session = Depends(get_db_session),
    ) -> Envelope[TemplateDetail]:
        template = template_ops.get_template(db, principal.tenant_id, template_id, family)
        return Envelope(data=TemplateDetail.from_row(template))

    @router.post(
        "/templates",
        response_model=Envelope[TemplateDetail],
        status_code=status.HTTP_201_CREATED,
    )
    def create_template(
        payload: TemplateInput,
        principal: Principal = Depends(require_admin),
        db: Session = Depends(get_db_session),
    ) -> Envelope[TemplateDetail]:
        template = template_ops.create_template(
            db, principal.tenant_id, payload, created_by=principal.user_id, family=family
        )
        db.commit()
        db.refresh(template)
        return Envelope(data=TemplateDetail.from_row(template))

    @router.put("/templates/{template_id}", response_model=Envelope[TemplateDetail])
    def update_template(
        template_id: int,
        payload: TemplateUpdateInput,
        principal: Principal = Depends(require_admin),
        db: Session = Depends(get_db_session),
    ) -> Envelope[TemplateDetail]:
        template = template_ops.update_template(db, principal.tenant_id, template_id, payload, family)
        db.commit()
        db.refresh(template)
        return Envelope(data=TemplateDetail.from_row(template))

    @router.delete("/templates/{template_id}", response_model=Envelope[DeleteResult])
    def delete_template(
        template_id: int,
        principal: Principal = Depends(require_admin),
        db: Session = Depends(get_db_session),
    ) -> Envelope[DeleteResult]:
        outcome = template_ops.delete_template(db, principal.tenant_id, template_id, family)
        db.commit()
        return Envelope(data=DeleteResult(**outcome))

    @router.post(
        "/templates/{template_id}/duplicate",
        response_model=Envelope[TemplateDetail],
        status_code=status.HTTP_201_CREATED,
    )
    def duplicate_template(
        template_id: int,
        payload: DuplicateRequest | None = Body(None),
        principal: Principal = Depends(require_admin),
        db: Session = Depends(get_db_session),
    ) -> Envelope[TemplateDetail]:
        copy = template_ops.duplicate_template(
            db,
            principal.tenant_id,
            template_id,
            name=payload.name if payload else None,
            created_by=principal.user_id,
            family=family,
        )
        db.commit()
        db.refresh(copy)
        return Envelope(data=TemplateDetail.from_row(copy))

    @router.post("/templates/{template_id}/publish", response_model=Envelope[TemplateSummary])
    def publish_template(
        template_id: int,
        payload: PublishRequest | None = Body(None),
        principal: Principal = Depends(require_admin),
        db: Session = Depends(get_db_session),
    ) -> Envelope[TemplateSummary]:
        published = payload.published if payload else True
        template = template_ops.publish_template(
            db, principal.tenant_id, template_id, published=published, family=family
        )
        db.commit()
        return Envelope(data=TemplateSummary.model_validate(template))

    # ----------------------------------------------------------- generation

    @router.post("/ai/generate-questions", response_model=Envelope[dict[str, Any]])
    def generate_questions(
        payload: GenerationRequest,
        principal: Principal = Depends(require_admin),
        db: Session = Depends(get_db_session),
        generator: QuestionGenerator = Depends(get_generator),
    ) -> Envelope[dict[str, Any]]:
        if family_of(payload.kind) != family:
            raise ValidationError("type", f"{payload.kind} is not an {family} template", payload.kind)
        generated = generator.generate(
            db, payload, tenant_id=principal.tenant_id, user_id=principal.user_id
        )
        return Envelope(data=generated)

    # ------------------------------------------------------------ campaigns

    @router.post(
        "/campaigns",
        response_model=Envelope[CampaignCreated],
        status_code=status.HTTP_201_CREATED,
    )
    def create_campaign(
        payload: CampaignInput,
        response: Response,
        principal: Principal = Depends(require_admin),
        db: Session = Depends(get_db_session),
        dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    ) -> Envelope[CampaignCreated]:
        campaign, created = campaign_ops.create_campaign(
            db,
            principal.tenant_id,
            payload,
            family=family,
            created_by=principal.user_id,
            dispatcher=dispatcher,
        )
        db.commit()
        if not created:
            response.status_code = status.HTTP_200_OK
        return Envelope(
            data=CampaignCreated(
                campaign=Campaign.model_validate(campaign),
                assignment_count=len(campaign.assignments),
                created=created,
            )
        )

    @router.get("/campaigns", response_model=Envelope[Page[Campaign]])
    def list_campaigns(
        status_filter: str | None = Query(None, alias="status"),
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        principal: Principal = Depends(require_admin),
        db: Session = Depends(get_db_session),
    ) -> Envelope[Page[Campaign]]:
        listing = campaign_ops.list_campaigns(
            db, principal.tenant_id, family, status=status_filter, page=page, limit=limit
        )
        listing["items"] = [Campaign.model_validate(c) for c in listing["items"]]
        return Envelope(data=Page[Campaign](**listing))

    @router.post("/campaigns/check-conflicts", response_model=Envelope[dict[str, Any]])
    def check_conflicts(
        payload: ConflictCheckInput,
        principal: Principal = Depends(require_admin),
        db: Session = Depends(get_db_session),
    ) -> Envelope[dict[str, Any]]:
        return Envelope(data=campaign_ops.check_conflicts(db, principal.tenant_id, payload, family))

    @router.get("/campaigns/{campaign_id}", response_model=Envelope[Campaign])
    def get_campaign(
        campaign_id: int,
        principal: Principal = Depends(require_admin),
        db: Session = Depends(get_db_session),
    ) -> Envelope[Campaign]:
        campaign = campaign_ops.get_campaign(db, principal.tenant_id, campaign_id, family)
        return Envelope(data=Campaign.model_validate(campaign))

    @router.get("/campaigns/{campaign_id}/stats", response_model=Envelope[dict[str, Any]])
    def campaign_stats(
        campaign_id: int,
        principal: Principal = Depends(require_admin),
        db: Session = Depends(get_db_session),
    ) -> Envelope[dict[str, Any]]:
        return Envelope(data=campaign_ops.campaign_stats(db, principal.tenant_id, campaign_id, family))

    @router.post("/campaigns/{campaign_id}/cancel", response_model=Envelope[Campaign])
    def cancel_campaign(
        campaign_id: int,
        principal: Principal = Depends(require_admin),
        db: Session = Depends(get_db_session),
    ) -> Envelope[Campaign]:
        campaign = campaign_ops.cancel_campaign(db, principal.tenant_id, campaign_id, family)
        db.commit()
        return Envelope(data=Campaign.model_validate(campaign))

    # ---------------------------------------------------------- assignments

    @router.get("/my-assignments", response_model=Envelope[list[Assignment]])
    def my_assignments(
        principal: Principal = Depends(get_principal),
        employee_id: int = Depends(get_employee_id),
        db: Session = Depends(get_db_session),
    ) -> Envelope[list[Assignment]]:
        rows = assignment_ops.my_assignments(db, principal.tenant_id, employee_id, family)
        return Envelope(data=[Assignment.model_validate(a) for a in rows])

    @router.put("/assignments/{assignment_id}/progress", response_model=Envelope[Assignment])
    def save_progress(
        assignment_id: int,
        payload: SubmissionInput,
        principal: Principal = Depends(get_principal),
        employee_id: int = Depends(get_employee_id),
        db: Session = Depends(get_db_session),
    ) -> Envelope[Assignment]:
        assignment = assignment_ops.save_progress(
            db, principal.tenant_id, employee_id, assignment_id, payload, family
        )
        db.commit()
        return Envelope(data=Assignment.model_validate(assignment))

    @router.post("/assignments/{assignment_id}/submit", response_model=Envelope[SubmissionResult])
    def submit_assignment(
        assignment_id: int,
        payload: SubmissionInput,
        principal: Principal = Depends(get_principal),
        employee_id: int = Depends(get_employee_id),
        db: Session = Depends(get_db_session),
        dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    ) -> Envelope[SubmissionResult]:
        row, created = assignment_ops.submit_assignment(
            db,
            principal.tenant_id,
            employee_id,
            assignment_id,
            payload,
            family=family,
            dispatcher=dispatcher,
        )
        db.commit()
        return Envelope(data=SubmissionResult(result=Result.from_row(row), created=created))

    @router.get("/my-latest-result", response_model=Envelope[Result | None])
    def my_latest_result(
        principal: Principal = Depends(get_principal),
        employee_id: int = Depends(get_employee_id),
        db: Session = Depends(get_db_session),
    ) -> Envelope[Result | None]:
        row = assignment_ops.latest_result(db, principal.tenant_id, employee_id, family)
        return Envelope(data=Result.from_row(row) if row is not None else None)

    @router.post("/assignments/{assignment_id}/recompute", response_model=Envelope[Result])
    def recompute_result(
        assignment_id: int,
        principal: Principal = Depends(require_admin),
        db: Session = Depends(get_db_session),
    ) -> Envelope[Result]:
        row = assignment_ops.recompute_result(db, principal.tenant_id, assignment_id)
        db.commit()
        return Envelope(data=Result.from_row(row))

    return router


assessments = build_router("assessment", "/assessments")
engagement = build_router("engagement", "/engagement")
