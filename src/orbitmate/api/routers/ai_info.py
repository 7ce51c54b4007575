from __future__ import annotations

from fastapi import APIRouter, Depends

from ...domain.chat_models import ProviderCatalog
from ...services.providers.registry import ProviderRegistry
from ..deps import get_providers

router = APIRouter(prefix="/ai", tags=["ai"])


@router.get("/providers", response_model=ProviderCatalog)
def list_providers(providers: ProviderRegistry = Depends(get_providers)) -> ProviderCatalog:
    return providers.catalog()
