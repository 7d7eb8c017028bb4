from fastapi import Header, HTTPException, Request

from receipt_vault.services import Services


async def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized")
    return services


async def get_owner_id(x_owner_id: str = Header(None)) -> str:
    if not x_owner_id:
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header")
    return x_owner_id
