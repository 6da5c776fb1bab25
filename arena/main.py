"""FastAPI server exposing the settlement workflows."""
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from arena.auth.middleware import AuthenticatedUser, AuthMiddleware
from arena.auth.roles import check_role
from arena.config import config
from arena.errors import ArenaError
from arena.models import Role, TournamentStatus
from arena.protocol.messages import (
    BanRequest,
    CreateRedeemCodeRequest,
    CreateTournamentRequest,
    DepositRequest,
    JoinTournamentRequest,
    LoginRequest,
    ProcessPaymentRequest,
    RedeemRequest,
    RegisterRequest,
    RoleRequest,
    RoomRequest,
    TournamentStatusRequest,
    WithdrawRequest,
)
from arena.protocol.responses import ResultStatus, WorkflowResult, run_workflow
from arena.redeem.engine import RedeemEngine
from arena.settings import StorageSettings
from arena.settlement.accounts import AccountService
from arena.settlement.payments import Decision, PaymentDesk
from arena.storage import Storage, create_storage
from arena.tournaments.registry import TournamentRegistry
from arena.utils.logger import get_logger

logger = get_logger(__name__)


class ArenaServer:
    """Wires one storage backend to every workflow service."""

    def __init__(self, storage: Storage, settings=None):
        settings = settings or StorageSettings()
        self.storage = storage
        self.auth = AuthMiddleware(storage)
        self.accounts = AccountService(storage, settings)
        self.payments = PaymentDesk(storage, settings)
        self.tournaments = TournamentRegistry(storage)
        self.redeem = RedeemEngine(storage)

    async def initialize(self):
        """Initialize server resources."""
        await self.storage.connect()
        logger.info(f"Arena server initialized ({type(self.storage).__name__})")

    async def cleanup(self):
        """Clean up server resources."""
        await self.storage.disconnect()
        logger.info("Arena server shutdown complete")


def respond(result: WorkflowResult, created: bool = False) -> JSONResponse:
    status_code = 201 if created and result.success else result.http_status
    return JSONResponse(status_code=status_code, content=result.to_dict())


def get_server(request: Request) -> ArenaServer:
    return request.app.state.server


async def current_user(
    server: ArenaServer = Depends(get_server),
    authorization: Optional[str] = Header(None),
) -> AuthenticatedUser:
    """Resolve the caller from the bearer token."""
    return await server.auth.authenticate(authorization)


async def admin_user(user: AuthenticatedUser = Depends(current_user)) -> AuthenticatedUser:
    """Role gate for admin routes."""
    check_role(user.role, {Role.ADMIN})
    return user


def _dicts(items) -> list[dict]:
    return [item.to_dict() for item in items]


def create_app(server: ArenaServer) -> FastAPI:
    """Build the FastAPI application around a server instance."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        await server.initialize()
        yield
        await server.cleanup()

    app = FastAPI(
        title="Arena Ledger",
        description="Wallets, paid tournaments and promo codes",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.server = server

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ArenaError)
    async def arena_error_handler(request: Request, exc: ArenaError):
        return respond(WorkflowResult.from_error(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())[1:])
        message = f"{field}: {first.get('msg', 'invalid')}" if field else "Invalid request"
        return respond(WorkflowResult(False, ResultStatus.INVALID_INPUT, message=message))

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    # Auth endpoints

    @app.post("/api/auth/register")
    async def register(body: RegisterRequest):
        result = await run_workflow(
            server.accounts.register(
                body.username, body.email, body.password, body.phone, body.referral_code
            ),
            lambda session: session.to_dict(),
        )
        return respond(result, created=True)

    @app.post("/api/auth/login")
    async def login(body: LoginRequest):
        result = await run_workflow(
            server.accounts.login(body.email, body.password),
            lambda session: session.to_dict(),
        )
        return respond(result)

    @app.get("/api/auth/me")
    async def me(user: AuthenticatedUser = Depends(current_user)):
        return respond(await run_workflow(server.accounts.profile(user.user_id)))

    # Wallet endpoints

    @app.get("/api/wallet")
    async def get_wallet(user: AuthenticatedUser = Depends(current_user)):
        result = await run_workflow(
            server.accounts.wallet(user.user_id), lambda wallet: wallet.to_dict()
        )
        return respond(result)

    @app.post("/api/wallet/deposit")
    async def request_deposit(body: DepositRequest, user: AuthenticatedUser = Depends(current_user)):
        result = await run_workflow(
            server.payments.request_deposit(
                user.user_id,
                body.amount,
                body.payment_proof_url,
                payment_method=body.payment_method,
                reference=body.transaction_id_manual,
            ),
            lambda tx: tx.to_dict(),
        )
        return respond(result, created=True)

    @app.post("/api/wallet/withdraw")
    async def request_withdrawal(body: WithdrawRequest, user: AuthenticatedUser = Depends(current_user)):
        result = await run_workflow(
            server.payments.request_withdrawal(
                user.user_id,
                body.amount,
                payment_method=body.payment_method,
                account_details=body.account_details,
            ),
            lambda tx: tx.to_dict(),
        )
        return respond(result, created=True)

    @app.get("/api/wallet/transactions")
    async def transactions(user: AuthenticatedUser = Depends(current_user)):
        return respond(await run_workflow(server.payments.history(user.user_id), _dicts))

    @app.post("/api/wallet/redeem")
    async def redeem(body: RedeemRequest, user: AuthenticatedUser = Depends(current_user)):
        result = await run_workflow(
            server.redeem.redeem(user.user_id, body.code),
            lambda amount: {"amount": str(amount)},
        )
        if result.success:
            result.message = f"Successfully redeemed {result.data['amount']}"
        return respond(result)

    # Tournament endpoints

    @app.get("/api/tournaments")
    async def list_tournaments():
        return respond(await run_workflow(server.tournaments.list_tournaments(), _dicts))

    @app.get("/api/tournaments/my")
    async def my_tournaments(user: AuthenticatedUser = Depends(current_user)):
        return respond(await run_workflow(server.tournaments.my_tournaments(user.user_id)))

    @app.get("/api/tournaments/{tournament_id}")
    async def get_tournament(tournament_id: int):
        result = await run_workflow(
            server.tournaments.get_tournament(tournament_id), lambda t: t.to_dict()
        )
        return respond(result)

    @app.post("/api/tournaments/{tournament_id}/join")
    async def join_tournament(
        tournament_id: int,
        body: JoinTournamentRequest,
        user: AuthenticatedUser = Depends(current_user),
    ):
        result = await run_workflow(
            server.tournaments.join_tournament(tournament_id, user.user_id, body.game_username),
            lambda participant: participant.to_dict(),
        )
        if result.success:
            result.message = "Joined successfully"
        return respond(result)

    # Admin endpoints

    @app.post("/api/admin/tournaments")
    async def create_tournament(body: CreateTournamentRequest, admin: AuthenticatedUser = Depends(admin_user)):
        result = await run_workflow(
            server.tournaments.create_tournament(
                body.title,
                body.entry_fee,
                body.max_players,
                created_by=admin.user_id,
                game_type=body.game_type,
                map_type=body.map_type,
                prize_pool=body.prize_pool,
                per_kill=body.per_kill,
                start_time=body.start_time,
            ),
            lambda t: t.to_dict(include_room=True),
        )
        return respond(result, created=True)

    @app.put("/api/admin/tournaments/{tournament_id}/room")
    async def update_room(tournament_id: int, body: RoomRequest, admin: AuthenticatedUser = Depends(admin_user)):
        result = await run_workflow(
            server.tournaments.update_room(tournament_id, body.room_id, body.room_password),
            lambda t: t.to_dict(include_room=True),
        )
        return respond(result)

    @app.put("/api/admin/tournaments/{tournament_id}/status")
    async def set_tournament_status(
        tournament_id: int,
        body: TournamentStatusRequest,
        admin: AuthenticatedUser = Depends(admin_user),
    ):
        result = await run_workflow(
            server.tournaments.set_status(tournament_id, TournamentStatus(body.status)),
            lambda t: t.to_dict(include_room=True),
        )
        return respond(result)

    @app.post("/api/admin/tournaments/{tournament_id}/cancel")
    async def cancel_tournament(tournament_id: int, admin: AuthenticatedUser = Depends(admin_user)):
        result = await run_workflow(
            server.tournaments.cancel_and_refund(tournament_id),
            lambda refunded: {"refunded": refunded},
        )
        if result.success:
            result.message = "Tournament cancelled and refunded"
        return respond(result)

    @app.get("/api/admin/payments")
    async def pending_payments(admin: AuthenticatedUser = Depends(admin_user)):
        return respond(await run_workflow(server.payments.pending()))

    @app.put("/api/admin/payments/{transaction_id}")
    async def process_payment(
        transaction_id: int,
        body: ProcessPaymentRequest,
        admin: AuthenticatedUser = Depends(admin_user),
    ):
        result = await run_workflow(
            server.payments.process_payment(transaction_id, Decision(body.status), body.admin_note),
            lambda tx: tx.to_dict(),
        )
        if result.success:
            result.message = f"Transaction {body.status}"
        return respond(result)

    @app.post("/api/admin/redeem")
    async def create_redeem_code(body: CreateRedeemCodeRequest, admin: AuthenticatedUser = Depends(admin_user)):
        result = await run_workflow(
            server.redeem.create_code(body.code, body.amount, body.max_uses, body.expires_at),
            lambda promo: promo.to_dict(),
        )
        return respond(result, created=True)

    @app.put("/api/admin/users/{user_id}/ban")
    async def ban_user(user_id: str, body: BanRequest, admin: AuthenticatedUser = Depends(admin_user)):
        result = await run_workflow(
            server.accounts.set_banned(user_id, body.is_banned), lambda u: u.to_dict()
        )
        return respond(result)

    @app.put("/api/admin/users/{user_id}/role")
    async def set_user_role(user_id: str, body: RoleRequest, admin: AuthenticatedUser = Depends(admin_user)):
        result = await run_workflow(
            server.accounts.set_role(user_id, Role(body.role)), lambda u: u.to_dict()
        )
        return respond(result)

    return app


# Global server instance
server = ArenaServer(create_storage())
app = create_app(server)


# Entry point
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "arena.main:app",
        host=config.host,
        port=config.port,
    )
