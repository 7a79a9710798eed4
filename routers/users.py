from fastapi import APIRouter, Depends

import crud
from client import DataClient
from dependencies import get_client
from models import LoginIn, PasswordChange, RegisterIn, UserPublic

router = APIRouter(prefix="/users")


@router.get("/check-init")
def check_init_api(client: DataClient = Depends(get_client)):
    return {"initialized": crud.check_init(client)}


@router.post("/register", response_model=UserPublic, status_code=201)
def register_api(body: RegisterIn, client: DataClient = Depends(get_client)):
    return crud.register_user(client, body)


@router.post("/login", response_model=UserPublic)
def login_api(body: LoginIn, client: DataClient = Depends(get_client)):
    return crud.login_user(client, body)


@router.get("", response_model=list[UserPublic])
def list_users_api(client: DataClient = Depends(get_client)):
    return crud.list_users(client)


@router.post("/{user_id}/password", response_model=UserPublic)
def change_password_api(user_id: str, body: PasswordChange, client: DataClient = Depends(get_client)):
    return crud.change_password(client, user_id, body.current_password, body.new_password)
