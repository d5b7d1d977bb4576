"""
Authentication API endpoints.

This module provides REST API endpoints for:
- User registration and email verification
- Login/logout with server-side sessions
- Token refresh with rotation
- Password reset and password change
- Profile read/update
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session

import schemas
from config import PASSWORD_RESET_EXPIRE_MINUTES
from database import get_db
from errors import ServiceError, conflict, invalid, unauthenticated
from models import Session as UserSession, User
from auth.security import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    COOKIE_DOMAIN,
    COOKIE_SAMESITE,
    COOKIE_SECURE,
    REFRESH_COOKIE_NAME,
    REFRESH_TOKEN_EXPIRE_DAYS,
    create_access_token,
    create_refresh_token,
    generate_token,
    hash_password,
    token_claims,
    verify_password,
    verify_token,
)
from auth.dependencies import get_current_user
from services.email import EmailService, get_email_service
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

RESET_REQUESTED_MESSAGE = "If an account with this email exists, a password reset link has been sent."


def _issue_tokens(db: Session, user: User, request: Request) -> schemas.TokenPair:
    """Create an access/refresh pair and persist a session keyed by the refresh token."""
    claims = token_claims(user)
    access_expires_at = utc_now() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(claims, expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    refresh_token, refresh_expires_at = create_refresh_token(claims)

    user_agent = request.headers.get("user-agent")
    db.add(
        UserSession(
            user_id=user.id,
            refresh_token=refresh_token,
            user_agent=user_agent[:512] if user_agent else None,
            ip_address=request.client.host if request.client else None,
            expires_at=refresh_expires_at,
        )
    )
    return schemas.TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=access_expires_at,
    )


def _set_refresh_cookie(response: Response, refresh_token: str) -> None:
    response.set_cookie(
        key=REFRESH_COOKIE_NAME,
        value=refresh_token,
        path="/",  # Must match path in delete_cookie for logout to work
        httponly=True,
        secure=COOKIE_SECURE,
        samesite=COOKIE_SAMESITE,
        domain=COOKIE_DOMAIN,
        max_age=REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
    )


def _presented_refresh_token(body_token: Optional[str], request: Request) -> Optional[str]:
    return body_token or request.cookies.get(REFRESH_COOKIE_NAME)


@router.post("/register", response_model=schemas.RegisterResponse, status_code=status.HTTP_201_CREATED)
async def register(
    payload: schemas.RegisterRequest,
    db: Session = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
):
    """
    Register a new user account and send the verification email.

    Raises:
        ServiceError(conflict): email or username already taken
        ServiceError(delivery_failed): verification email could not be sent;
            the account is not created
    """
    email = payload.email.lower()
    logger.info(f"Registration attempt for email: {email}")

    if db.query(User).filter(User.email == email).first():
        logger.info(f"Registration failed: email already exists: {email}")
        raise conflict("User with this email already exists")
    if db.query(User).filter(User.username == payload.username).first():
        logger.info(f"Registration failed: username already taken: {payload.username}")
        raise conflict("Username is already taken")

    verify_token_value = generate_token()
    user = User(
        email=email,
        username=payload.username,
        first_name=payload.first_name,
        last_name=payload.last_name,
        password_hash=hash_password(payload.password),
        is_active=True,
        email_verified=False,
        email_verify_token=verify_token_value,
    )
    db.add(user)
    db.flush()

    try:
        await email_service.send_verification_email(user.email, verify_token_value)
    except ServiceError:
        db.rollback()
        logger.warning(f"Registration rolled back for {email}: verification email failed")
        raise

    db.commit()
    db.refresh(user)

    logger.critical(f"User registered successfully: {user.email} (ID: {user.id})")
    return {
        "message": "Registration successful. Please check your email to verify your account.",
        "user": user,
    }


@router.post("/login", response_model=schemas.LoginResponse)
async def login(
    payload: schemas.LoginRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    """
    Login with email and password.

    Returns the user and a token pair. With remember_me the refresh token is
    also set as an httpOnly cookie.
    """
    email = payload.email.lower()
    logger.info(f"Login attempt for email: {email}")

    user = db.query(User).filter(User.email == email).first()
    if user is None or not verify_password(payload.password, user.password_hash):
        logger.info(f"Login failed: invalid credentials for {email}")
        raise unauthenticated("Invalid email or password")
    if not user.is_active:
        logger.info(f"Login failed: inactive user: {email}")
        raise unauthenticated("Invalid email or password")

    tokens = _issue_tokens(db, user, request)
    user.last_login_at = utc_now()
    db.commit()
    db.refresh(user)

    if payload.remember_me:
        _set_refresh_cookie(response, tokens.refresh_token)

    logger.critical(f"User logged in successfully: {user.email} (ID: {user.id})")
    return {"message": "Login successful", "user": user, "tokens": tokens}


@router.post("/refresh-token", response_model=schemas.RefreshResponse)
async def refresh_token(
    request: Request,
    response: Response,
    payload: Optional[schemas.RefreshRequest] = None,
    db: Session = Depends(get_db),
):
    """
    Exchange a refresh token for a new token pair.

    Implements rotation: the session row keeps its identity but its refresh
    token is replaced, so the presented token stops working.
    """
    body_token = payload.refresh_token if payload else None
    presented = _presented_refresh_token(body_token, request)
    if not presented:
        logger.info("Token refresh failed: no refresh token presented")
        raise unauthenticated("Refresh token required")

    claims = verify_token(presented, expected_type="refresh")
    session = db.query(UserSession).filter(UserSession.refresh_token == presented).first()
    if claims is None or session is None:
        logger.info("Token refresh failed: invalid or unknown refresh token")
        raise unauthenticated("Invalid or expired refresh token")

    if ensure_utc(session.expires_at) <= utc_now():
        logger.info(f"Token refresh failed: session {session.id} expired")
        db.delete(session)
        db.commit()
        raise unauthenticated("Invalid or expired refresh token")

    user = session.user
    if user is None or not user.is_active:
        logger.info(f"Token refresh failed: user inactive for session {session.id}")
        raise unauthenticated("Invalid or expired refresh token")

    user_claims = token_claims(user)
    new_refresh, new_refresh_expires_at = create_refresh_token(user_claims)
    session.refresh_token = new_refresh
    session.expires_at = new_refresh_expires_at

    access_expires_at = utc_now() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(user_claims, expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    db.commit()

    if not body_token:
        _set_refresh_cookie(response, new_refresh)

    logger.critical(f"Token refreshed successfully for user: {user.email} (ID: {user.id})")
    return {
        "tokens": schemas.TokenPair(
            access_token=access_token,
            refresh_token=new_refresh,
            expires_at=access_expires_at,
        )
    }


@router.post("/logout", response_model=schemas.MessageResponse)
async def logout(
    request: Request,
    response: Response,
    payload: Optional[schemas.LogoutRequest] = None,
    db: Session = Depends(get_db),
):
    """
    Logout by deleting the session of the presented refresh token.

    Does not require authentication, so users can always log out, even in
    broken auth states.
    """
    presented = _presented_refresh_token(payload.refresh_token if payload else None, request)
    if presented:
        deleted = db.query(UserSession).filter(UserSession.refresh_token == presented).delete()
        db.commit()
        logger.debug(f"Logout removed {deleted} session(s)")

    # Browser requires matching domain/path/secure/samesite to delete a cookie
    response.delete_cookie(
        key=REFRESH_COOKIE_NAME,
        path="/",
        domain=COOKIE_DOMAIN,
        secure=COOKIE_SECURE,
        samesite=COOKIE_SAMESITE,
    )

    logger.critical("User logged out successfully")
    return {"message": "Logout successful"}


@router.post("/verify-email", response_model=schemas.MessageResponse)
async def verify_email(
    payload: schemas.VerifyEmailRequest,
    db: Session = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
):
    user = db.query(User).filter(User.email_verify_token == payload.token).first()
    if user is None:
        logger.info("Email verification failed: unknown token")
        raise invalid("Invalid or expired verification token", field="token")

    user.email_verified = True
    user.email_verify_token = None
    db.commit()

    logger.info(f"Email verified for user {user.id}")
    await email_service.send_welcome_email(user.email, user.first_name)
    return {"message": "Email verified successfully"}


@router.post("/forgot-password", response_model=schemas.MessageResponse)
async def forgot_password(
    payload: schemas.ForgotPasswordRequest,
    db: Session = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
):
    """
    Start a password reset.

    The response is identical whether or not the address is registered.
    """
    email = payload.email.lower()
    user = db.query(User).filter(User.email == email, User.is_active.is_(True)).first()
    if user is None:
        logger.info("Password reset requested for an unknown address")
        return {"message": RESET_REQUESTED_MESSAGE}

    reset_token = generate_token()
    user.password_reset_token = reset_token
    user.password_reset_expires_at = utc_now() + timedelta(minutes=PASSWORD_RESET_EXPIRE_MINUTES)
    db.flush()

    try:
        await email_service.send_password_reset_email(user.email, reset_token)
    except ServiceError:
        db.rollback()
        raise

    db.commit()
    logger.critical(f"Password reset requested for user {user.id}")
    return {"message": RESET_REQUESTED_MESSAGE}


@router.post("/reset-password", response_model=schemas.MessageResponse)
async def reset_password(payload: schemas.ResetPasswordRequest, db: Session = Depends(get_db)):
    """Consume a reset token, set the new password, and end every session of the user."""
    user = db.query(User).filter(User.password_reset_token == payload.token).first()
    if (
        user is None
        or user.password_reset_expires_at is None
        or ensure_utc(user.password_reset_expires_at) <= utc_now()
    ):
        logger.info("Password reset failed: invalid or expired token")
        raise invalid("Invalid or expired reset token", field="token")

    user.password_hash = hash_password(payload.new_password)
    user.password_reset_token = None
    user.password_reset_expires_at = None
    deleted = db.query(UserSession).filter(UserSession.user_id == user.id).delete()
    db.commit()

    logger.critical(f"Password reset for user {user.id}; {deleted} session(s) revoked")
    return {"message": "Password reset successful. Please log in with your new password."}


@router.post("/change-password", response_model=schemas.MessageResponse)
async def change_password(
    payload: schemas.ChangePasswordRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Change the password and end every other session of the user."""
    if not verify_password(payload.current_password, current_user.password_hash):
        logger.info(f"Password change failed for user {current_user.id}: wrong current password")
        raise invalid("Current password is incorrect", field="current_password")

    current_user.password_hash = hash_password(payload.new_password)

    keep = _presented_refresh_token(payload.refresh_token, request)
    sessions = db.query(UserSession).filter(UserSession.user_id == current_user.id)
    if keep:
        sessions = sessions.filter(UserSession.refresh_token != keep)
    deleted = sessions.delete(synchronize_session=False)
    db.commit()

    logger.critical(f"Password changed for user {current_user.id}; {deleted} other session(s) revoked")
    return {"message": "Password changed successfully"}


@router.get("/profile", response_model=schemas.UserProfile)
async def get_profile(current_user: User = Depends(get_current_user)):
    return current_user


@router.put("/profile", response_model=schemas.UserProfile)
async def update_profile(
    payload: schemas.ProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    for required_field in ("username", "timezone", "language"):
        if required_field in changes and changes[required_field] is None:
            raise invalid(f"{required_field} cannot be null", field=required_field)

    new_username = changes.get("username")
    if new_username and new_username != current_user.username:
        taken = (
            db.query(User)
            .filter(User.username == new_username, User.id != current_user.id)
            .first()
        )
        if taken:
            raise conflict("Username is already taken")

    for key, value in changes.items():
        setattr(current_user, key, value)
    db.commit()
    db.refresh(current_user)

    logger.info(f"Profile updated for user {current_user.id}: {sorted(changes.keys())}")
    return current_user
