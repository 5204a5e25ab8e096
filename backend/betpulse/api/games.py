from fastapi import APIRouter, Depends, status

from betpulse.api.deps import get_current_user, get_settlement_service
from betpulse.models import User
from betpulse.schemas import (
    BetHistoryResponse,
    BetReceiptResponse,
    BetRequest,
    BetResponse,
    FairnessResponse,
    GameListResponse,
    GameResponse,
    VerifyBetRequest,
    VerifyBetResponse,
    VerifySeedRequest,
    VerifySeedResponse,
)
from betpulse.services import fairness
from betpulse.services.settlement import BetSettlementService

router = APIRouter(prefix="/api/games", tags=["Games"])


@router.get("", response_model=GameListResponse)
async def list_games(service: BetSettlementService = Depends(get_settlement_service)):
    games = await service.list_games()
    return GameListResponse(games=[GameResponse.model_validate(game) for game in games])


@router.post("/bet", response_model=BetReceiptResponse, status_code=status.HTTP_201_CREATED)
async def place_bet(
    request: BetRequest,
    user: User = Depends(get_current_user),
    service: BetSettlementService = Depends(get_settlement_service),
):
    """Place a bet; the response discloses the revealed seeds for self-verification."""
    receipt = await service.place_bet(
        user_id=user.id,
        game_key=request.game_key,
        selection=request.selection,
        wager=request.wager,
        client_seed=request.client_seed,
    )
    return BetReceiptResponse(
        bet=BetResponse.model_validate(receipt.bet),
        balance=receipt.balance,
        fairness=FairnessResponse.model_validate(receipt.fairness),
        payout=receipt.payout,
        win=receipt.win,
    )


@router.get("/bets", response_model=BetHistoryResponse)
async def bet_history(
    user: User = Depends(get_current_user),
    service: BetSettlementService = Depends(get_settlement_service),
):
    bets = await service.list_user_bets(user.id)
    return BetHistoryResponse(bets=[BetResponse.model_validate(bet) for bet in bets])


@router.post("/verify", response_model=VerifyBetResponse)
async def verify_bet(
    request: VerifyBetRequest,
    service: BetSettlementService = Depends(get_settlement_service),
):
    result = await service.verify_bet(request.bet_id)
    return VerifyBetResponse(
        bet=BetResponse.model_validate(result.bet),
        outcome=result.outcome,
        is_valid=result.is_valid,
    )


@router.post("/verify-seed", response_model=VerifySeedResponse)
async def verify_seed(request: VerifySeedRequest):
    """Recompute an outcome from disclosed seeds, without a stored bet."""
    proof = fairness.build_proof(request.server_seed, request.client_seed, request.nonce)
    commitment = request.server_seed_hash.lower() if request.server_seed_hash is not None else None
    hash_matches = None
    if commitment is not None:
        hash_matches = proof.server_seed_hash == commitment
    is_valid = None
    if request.outcome is not None:
        is_valid = fairness.verify_outcome(
            request.server_seed,
            request.client_seed,
            request.nonce,
            request.outcome,
            server_seed_hash=commitment,
        )
    return VerifySeedResponse(
        outcome=proof.outcome,
        server_seed_hash=proof.server_seed_hash,
        hash_matches=hash_matches,
        is_valid=is_valid,
    )
