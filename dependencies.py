from fastapi import Request

from client import DataClient


def get_client(request: Request) -> DataClient:
    return request.app.state.client
