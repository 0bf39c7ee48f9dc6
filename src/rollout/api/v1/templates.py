"""Canary template endpoints."""
from fastapi import APIRouter, Depends, Request, Response, status

from src.rollout.core.limiter import MUTATION_LIMIT, limiter
from src.rollout.deployment.controller import LifecycleController
from src.rollout.deployment.templates import TemplateStore
from src.rollout.models.schemas import FromTemplateRequest, TemplateCreate, TemplateUpdate
from src.rollout.services.container import get_controller, get_templates

router = APIRouter()


@router.post("/templates", status_code=status.HTTP_201_CREATED)
@limiter.limit(MUTATION_LIMIT)
async def create_template(
    request: Request,
    body: TemplateCreate,
    templates: TemplateStore = Depends(get_templates),
):
    return (await templates.create(body.to_domain())).to_dict()


@router.get("/templates")
async def list_templates(templates: TemplateStore = Depends(get_templates)):
    return [t.to_dict() for t in await templates.list()]


@router.get("/templates/{template_id}")
async def get_template(template_id: int, templates: TemplateStore = Depends(get_templates)):
    return (await templates.get(template_id)).to_dict()


@router.patch("/templates/{template_id}")
@limiter.limit(MUTATION_LIMIT)
async def update_template(
    request: Request,
    template_id: int,
    body: TemplateUpdate,
    templates: TemplateStore = Depends(get_templates),
):
    return (await templates.update(template_id, body.changes())).to_dict()


@router.delete("/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(MUTATION_LIMIT)
async def delete_template(
    request: Request,
    template_id: int,
    templates: TemplateStore = Depends(get_templates),
):
    await templates.delete(template_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/templates/{template_id}/deployments", status_code=status.HTTP_201_CREATED)
@limiter.limit(MUTATION_LIMIT)
async def create_deployment_from_template(
    request: Request,
    template_id: int,
    body: FromTemplateRequest,
    templates: TemplateStore = Depends(get_templates),
    controller: LifecycleController = Depends(get_controller),
):
    """Create a pending deployment that copies the template's traffic and threshold settings."""
    config = await templates.create_from_template(template_id, body.overrides())
    return (await controller.create(config)).to_dict()
