"""
Side effects that follow a committed ladder change.

Push notifications, activity feed rows and entity-change broadcasts are each
scheduled as independent background tasks. None of them can fail the
operation that triggered them: errors are logged and dropped.
"""

import asyncio
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Set

from ladder.constants import PushConstants
from ladder.database.database import Database
from ladder.database.models import ActivityType, Challenge, Profile
from ladder.utils.logger import setup_logger

logger = setup_logger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def challenge_record(challenge: Challenge) -> Dict[str, Any]:
    """JSON-safe snapshot of a challenge row"""
    return {
        'id': challenge.id,
        'challenger_id': challenge.challenger_id,
        'challenged_id': challenge.challenged_id,
        'status': challenge.status.value,
        'game_type': challenge.game_type.value,
        'games_to_win': challenge.games_to_win,
        'venue': challenge.venue,
        'proposed_time': _iso(challenge.proposed_time),
        'deadline': _iso(challenge.deadline),
        'challenger_score': challenge.challenger_score,
        'challenged_score': challenge.challenged_score,
        'winner_id': challenge.winner_id,
        'stream_url': challenge.stream_url,
    }


def profile_record(profile: Profile) -> Dict[str, Any]:
    """JSON-safe snapshot of a profile row"""
    return {
        'id': profile.id,
        'display_name': profile.display_name,
        'ladder_rank': profile.ladder_rank,
        'points': profile.points,
        'fargo_rating': profile.fargo_rating,
        'cooldown_until': _iso(profile.cooldown_until),
        'is_claimed': profile.is_claimed,
    }


class LadderNotifier:
    """Fire-and-forget delivery of ladder events"""

    def __init__(self, db: Database, push_client=None, broker=None):
        """
        Args:
            db: Database used for activity rows and broadcast token lookup
            push_client: ExpoPushClient, or None to skip push delivery
            broker: RealtimeBroker for entity-change events, or None to skip them
        """
        self.db = db
        self.push_client = push_client
        self.broker = broker
        self._tasks: Set[asyncio.Task] = set()

    # Events

    def challenge_created(self, challenge: Challenge) -> None:
        challenger = challenge.challenger.display_name
        self._push(
            [challenge.challenged.expo_push_token],
            'New Challenge!',
            f"{challenger} challenged you to race to {challenge.games_to_win} in {challenge.game_type.value}!",
            {'type': PushConstants.CHALLENGE_RECEIVED, 'challenge_id': challenge.id}
        )
        self._activity(challenge.challenger_id, ActivityType.CHALLENGE_CREATED, {
            'challenge_id': challenge.id,
            'challenger_name': challenger,
            'challenged_name': challenge.challenged.display_name,
            'game_type': challenge.game_type.value,
            'games_to_win': challenge.games_to_win,
        })
        self._entity('challenges', 'INSERT', challenge_record(challenge))

    def challenge_responded(self, challenge: Challenge, accepted: bool) -> None:
        challenged = challenge.challenged.display_name
        if accepted:
            title, verb = 'Challenge Accepted!', 'accepted'
            push_type, activity_type = PushConstants.CHALLENGE_ACCEPTED, ActivityType.CHALLENGE_ACCEPTED
        else:
            title, verb = 'Challenge Declined', 'declined'
            push_type, activity_type = PushConstants.CHALLENGE_DECLINED, ActivityType.CHALLENGE_DECLINED

        self._push(
            [challenge.challenger.expo_push_token],
            title,
            f"{challenged} {verb} your {challenge.game_type.value} challenge.",
            {'type': push_type, 'challenge_id': challenge.id}
        )
        self._activity(challenge.challenged_id, activity_type, {
            'challenge_id': challenge.id,
            'challenger_name': challenge.challenger.display_name,
            'challenged_name': challenged,
        })
        self._entity('challenges', 'UPDATE', challenge_record(challenge))

    def details_updated(self, challenge: Challenge) -> None:
        self._entity('challenges', 'UPDATE', challenge_record(challenge))

    def match_live(self, challenge: Challenge) -> None:
        p1 = challenge.challenger.display_name
        p2 = challenge.challenged.display_name
        self._broadcast_push(
            'Match LIVE!',
            f"{p1} vs {p2} is now live!",
            {'type': PushConstants.LIVE_MATCH, 'challenge_id': challenge.id}
        )
        self._activity(challenge.challenger_id, ActivityType.MATCH_LIVE, {
            'challenge_id': challenge.id,
            'challenger_name': p1,
            'challenged_name': p2,
            'game_type': challenge.game_type.value,
            'stream_url': challenge.stream_url,
        })
        self._entity('challenges', 'UPDATE', challenge_record(challenge))

    def match_completed(self, challenge: Challenge, settlement) -> None:
        winner, loser = (
            (challenge.challenger, challenge.challenged)
            if challenge.winner_id == challenge.challenger_id
            else (challenge.challenged, challenge.challenger)
        )

        self._activity(winner.id, ActivityType.MATCH_COMPLETED, {
            'challenge_id': challenge.id,
            'challenger_name': challenge.challenger.display_name,
            'challenged_name': challenge.challenged.display_name,
            'final_score': challenge.final_score,
            'winner_name': winner.display_name,
            'game_type': challenge.game_type.value,
        })

        if settlement.swapped:
            self._activity(winner.id, ActivityType.RANK_CHANGED, {
                'challenge_id': challenge.id,
                'old_rank': settlement.winner_old_rank,
                'new_rank': settlement.winner_new_rank,
                'passed_name': loser.display_name,
            })

        body = f"{winner.display_name} beat {loser.display_name} {challenge.final_score} in {challenge.game_type.value}."
        if settlement.swapped:
            body += f" {winner.display_name} moves up to #{settlement.winner_new_rank}."
        self._push(
            [winner.expo_push_token, loser.expo_push_token],
            'Match Result',
            body,
            {'type': PushConstants.MATCH_RESULT, 'challenge_id': challenge.id}
        )

        self._entity('challenges', 'UPDATE', challenge_record(challenge))
        for profile in (winner, loser):
            self._entity('profiles', 'UPDATE', profile_record(profile))

    def challenges_expired(self, challenge_ids: Iterable[int]) -> None:
        for challenge_id in challenge_ids:
            self._entity('challenges', 'UPDATE', {'id': challenge_id, 'status': 'expired'})

    def profile_created(self, profile: Profile) -> None:
        self._entity('profiles', 'INSERT', profile_record(profile))

    def profile_claimed(self, profile: Profile, merged_ghost_id: Optional[int] = None) -> None:
        self._activity(profile.id, ActivityType.PROFILE_CLAIMED, {
            'display_name': profile.display_name,
            'ladder_rank': profile.ladder_rank,
            'merged_ghost_id': merged_ghost_id,
        })
        if merged_ghost_id is not None:
            self._entity('profiles', 'DELETE', {'id': merged_ghost_id})
            self._entity('profiles', 'INSERT', profile_record(profile))
        else:
            self._entity('profiles', 'UPDATE', profile_record(profile))

    # Delivery

    def _push(self, tokens: List[Optional[str]], title: str, body: str, data: Dict[str, Any]) -> None:
        tokens = [token for token in tokens if token]
        if self.push_client is None or not tokens:
            return
        self._spawn(self.push_client.send_many(tokens, title, body, data), f"push '{title}'")

    def _broadcast_push(self, title: str, body: str, data: Dict[str, Any]) -> None:
        if self.push_client is None:
            return

        async def _send():
            tokens = await self.db.get_push_tokens()
            if tokens:
                await self.push_client.send_many(tokens, title, body, data)

        self._spawn(_send(), f"broadcast '{title}'")

    def _activity(self, user_id: int, action_type: ActivityType, details: Dict[str, Any]) -> None:
        self._spawn(self.db.add_activity(user_id, action_type, details), f"activity {action_type.value}")

    def _entity(self, table: str, op: str, record: Dict[str, Any]) -> None:
        if self.broker is None:
            return
        self._spawn(self.broker.publish_entity_change(table, op, record), f"{op} on {table}")

    def _spawn(self, coro: Awaitable, label: str) -> None:
        task = asyncio.create_task(self._guarded(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guarded(self, coro: Awaitable, label: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning(f"Notification {label} failed: {e}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled notification to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
