from __future__ import annotations

from fastapi.routing import APIRoute
from starlette.requests import Request

from attendance_engine.request_context import tagged


class EndpointNameRoute(APIRoute):
    def get_route_handler(self):
        original_handler = super().get_route_handler()

        async def custom_handler(request: Request):
            with tagged(f'{request.method} {self.path}'):
                return await original_handler(request)

        return custom_handler
