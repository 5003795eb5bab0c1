from sqlmodel import Session, select

from esign.models.company import Company, User
from esign.schemas.auth import LoginRequest, TokenResponse
from esign.utils.security import create_access_token, verify_password


class AuthService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def authenticate(self, payload: LoginRequest) -> TokenResponse:
        statement = select(User).where(User.email == str(payload.email).lower())
        user = self.session.exec(statement).first()

        if not user or not user.is_active:
            raise ValueError("Invalid credentials")

        if not verify_password(payload.password, user.password_hash):
            raise ValueError("Invalid credentials")

        company = self.session.get(Company, user.company_id)
        if company is None or not company.is_active:
            raise ValueError("Company is inactive")

        token = create_access_token(str(user.id), str(user.company_id), {"role": user.role})
        return TokenResponse(access_token=token)
