# core/health.py

from typing import Dict, Optional


def check_providers(orchestrator) -> str:
    if orchestrator is None or not orchestrator.provider_names:
        return "fail"
    return "ok"


async def full_health_check(orchestrator, settings) -> Dict:
    """
    Configured mode, the adapters in the chain and which one served the
    most recent call. Providers are not pinged: a probe must not spend quota.
    """
    results = {
        "providers": check_providers(orchestrator),
    }

    selection: Optional[str] = None
    if orchestrator is not None and orchestrator.last_selection is not None:
        selection = orchestrator.last_selection.value

    overall = "ok" if all(v == "ok" for v in results.values()) else "degraded"

    return {
        "status": overall,
        "mode": settings.provider_mode if settings is not None else None,
        "providers": orchestrator.provider_names if orchestrator is not None else [],
        "lastSelection": selection,
        "dependencies": results,
    }
