from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from eksforge.logging import OutputSink
from eksforge.models import validate_spec
from eksforge.modules.network import NetworkFlags, resolve_network
from eksforge.modules.planner import PlanBuilder, check_capabilities
from eksforge.providers import Provider, get_provider
from eksforge.schema import parse_cluster_config

router = APIRouter()


class ValidateRequest(BaseModel):
    config: Dict[str, Any]


class PlanRequest(BaseModel):
    config: Dict[str, Any]
    zones: List[str] = Field(default_factory=list)
    vpc_cidr: Optional[str] = None
    private_subnets: List[str] = Field(default_factory=list)
    public_subnets: List[str] = Field(default_factory=list)
    vpc_from_cluster: Optional[str] = None


def provider_factory() -> Callable[..., Provider]:
    return get_provider


@router.post("/validate")
def run_validate(req: ValidateRequest):
    spec = validate_spec(parse_cluster_config(req.config))
    check_capabilities(spec)
    return {"status": "success", "cluster": spec.metadata.name, "version": spec.metadata.version}


@router.post("/plan")
def run_plan(req: PlanRequest, factory: Callable[..., Provider] = Depends(provider_factory)):
    """Resolve the network and return the plan that ``create cluster`` would execute."""
    spec = validate_spec(parse_cluster_config(req.config))
    provider = factory(spec.metadata.region)
    sink = OutputSink()
    with sink.discarding():
        network = resolve_network(spec, NetworkFlags(
            zones=req.zones,
            cidr=req.vpc_cidr,
            private_subnets=req.private_subnets,
            public_subnets=req.public_subnets,
            from_cluster=req.vpc_from_cluster,
        ), provider, sink)
        builder = PlanBuilder(provider, sink)
        pre_addons, post_addons = builder.build_addon_plans(spec)
        post_cluster = builder.build_post_cluster_creation_plan(spec, pre_addons)
        plan = builder.build_cluster_plan(spec, network, post_cluster_creation=post_cluster)

    return {
        "status": "success",
        "cluster": spec.metadata.name,
        "version": spec.metadata.version,
        "network": {
            "mode": network.mode.value,
            "zones": network.zones,
            "cidr": network.cidr,
            "vpc_id": network.vpc_id,
            "subnets": network.subnet_info(),
        },
        "tasks": plan.length,
        "plan": plan.describe(),
        "deferred_addons": post_addons.describe() if post_addons.length else None,
    }
