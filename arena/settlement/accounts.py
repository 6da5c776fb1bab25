"""Account registration, login and moderation."""
import secrets
import string
from dataclasses import dataclass
from typing import Optional

from arena.auth.jwt_handler import create_access_token
from arena.auth.password import hash_password, verify_password
from arena.errors import Forbidden, InvalidInput, NotFound, Unauthorized, UserExists
from arena.ledger import log, wallets
from arena.models import Role, TransactionType, User, Wallet, to_money
from arena.settings import SettingsProvider, StorageSettings
from arena.storage.base import Storage, UnitOfWork
from arena.utils.logger import get_logger

logger = get_logger(__name__)

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 8


def generate_referral_code() -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


@dataclass
class Session:
    """A freshly authenticated user and their access token."""
    user: User
    token: str

    def to_dict(self) -> dict:
        return {"token": self.token, "user": self.user.to_dict()}


class AccountService:
    """User accounts and their wallets."""

    def __init__(self, storage: Storage, settings: Optional[SettingsProvider] = None):
        self.storage = storage
        self.settings = settings or StorageSettings()

    async def _unique_referral_code(self, uow: UnitOfWork) -> str:
        while True:
            code = generate_referral_code()
            if await uow.find_user_by_referral_code(code) is None:
                return code

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        phone: Optional[str] = None,
        referral_code: Optional[str] = None,
        role: Role = Role.PLAYER,
    ) -> Session:
        """Register a new user with an empty wallet and the signup bonus.

        User, wallet and bonus are created in one unit of work. An unknown
        referral code is ignored.

        Args:
            username: Unique username.
            email: Unique email address (used for login).
            password: Plain text password.
            phone: Optional contact number.
            referral_code: Another user's referral code.
            role: User role (defaults to player).

        Returns:
            The new user and an access token.

        Raises:
            InvalidInput: If a required field is missing.
            UserExists: If username or email already exists.
        """
        username = (username or "").strip()
        email = (email or "").strip()
        if not username or not email or "@" not in email:
            raise InvalidInput("Username and a valid email are required")
        password_hash = hash_password(password)

        async with self.storage.unit_of_work() as uow:
            if await uow.user_exists(username, email):
                raise UserExists()

            referrer = None
            if referral_code:
                referrer = await uow.find_user_by_referral_code(referral_code.strip().upper())

            user = await uow.insert_user(
                username,
                email,
                password_hash,
                referral_code=await self._unique_referral_code(uow),
                phone=phone,
                referred_by=referrer.id if referrer else None,
                role=role,
            )
            await uow.insert_wallet(user.id)

            bonus = to_money(await self.settings.signup_bonus(uow))
            if bonus > 0:
                await wallets.credit(uow, user.id, bonus, bonus=True)
                await log.append(
                    uow, user.id, TransactionType.SIGNUP_BONUS, bonus, admin_note="Welcome Bonus"
                )

        logger.info(
            f"Registered new user: {username} ({email}, role: {role.value}"
            + (f", referred by {referrer.username})" if referrer else ")")
        )
        return Session(user=user, token=create_access_token(user.id, user.role))

    async def login(self, email: str, password: str) -> Session:
        """Authenticate by email and password.

        Raises:
            Unauthorized: If credentials are invalid.
            Forbidden: If the account is banned.
        """
        async with self.storage.unit_of_work() as uow:
            user = await uow.find_user_by_email((email or "").strip())
        if user is None or not verify_password(password, user.password_hash):
            raise Unauthorized("Invalid credentials")
        if user.is_banned:
            raise Forbidden("Account is banned")

        logger.info(f"User logged in: {user.username}")
        return Session(user=user, token=create_access_token(user.id, user.role))

    async def wallet(self, user_id: str) -> Wallet:
        async with self.storage.unit_of_work() as uow:
            wallet = await uow.find_wallet(user_id)
        if wallet is None:
            raise NotFound("Wallet not found")
        return wallet

    async def profile(self, user_id: str) -> dict:
        """User details with their wallet."""
        async with self.storage.unit_of_work() as uow:
            user = await uow.find_user(user_id)
            wallet = await uow.find_wallet(user_id)
        if user is None or wallet is None:
            raise NotFound("User not found")
        return {**user.to_dict(), "wallet": wallet.to_dict()}

    async def set_banned(self, user_id: str, banned: bool) -> User:
        async with self.storage.unit_of_work() as uow:
            user = await uow.update_user(user_id, is_banned=banned)
        if user is None:
            raise NotFound("User not found")
        logger.info(f"User {user.username} {'banned' if banned else 'unbanned'}")
        return user

    async def set_role(self, user_id: str, role: Role) -> User:
        try:
            role = Role(role)
        except ValueError:
            raise InvalidInput(f"Unknown role: {role}")
        async with self.storage.unit_of_work() as uow:
            user = await uow.update_user(user_id, role=role)
        if user is None:
            raise NotFound("User not found")
        logger.info(f"Updated role for {user.username} to {role.value}")
        return user
