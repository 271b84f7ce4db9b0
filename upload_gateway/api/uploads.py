"""Mount the tus engine under the configured upload path, behind the auth gate."""
from fastapi import APIRouter, Depends, Request

from upload_gateway.core.deps import authenticate_user, get_gateway

TUS_METHODS = ["OPTIONS", "POST", "HEAD", "PATCH", "DELETE", "GET", "PUT"]


async def handle_upload(request: Request, gateway=Depends(get_gateway)):
    return await gateway.tus.handle(request)


def create_upload_router(upload_path: str) -> APIRouter:
    router = APIRouter(tags=["uploads"], dependencies=[Depends(authenticate_user)])
    router.add_api_route(upload_path, handle_upload, methods=TUS_METHODS, include_in_schema=False)
    router.add_api_route(upload_path + "/{key:path}", handle_upload, methods=TUS_METHODS, include_in_schema=False)
    return router
