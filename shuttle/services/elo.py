"""
ELO rating engine for badminton: singles results and team-aware doubles.

- Start: 1200 ELO.
- K-factor: 40 while a player is provisional (< 30 games), then 32, dropping
  to 24 above 2000 and 16 above 2400 so top ratings stay stable.
- Singles results (player1_win / player2_win / draw) use the classic formula
  with a draw scored as 0.5 for both sides. Changes are whole numbers.
- Doubles sessions use the team average for the expectation; every player
  moves individually with their own K-factor, scaled by a score-margin
  multiplier.
- Formula: E = 1 / (1 + 10^((opp - own) / 400))
           ΔR = K * (actual - expected)
"""
import math

DEFAULT_ELO = 1200.0

_OUTCOME_SCORES = {
    'player1_win': (1.0, 0.0),
    'player2_win': (0.0, 1.0),
    'draw': (0.5, 0.5),
}

_SKILL_LEVELS = (
    (1200, 'E'),
    (1400, 'D'),
    (1600, 'C'),
    (1800, 'B'),
    (2000, 'A'),
)


def get_k_factor(rating, games_played):
    """Adaptive K-factor: provisional players move fast, top players slowly."""
    if games_played < 30:
        return 40
    if rating > 2400:
        return 16
    if rating > 2000:
        return 24
    return 32


def expected_score(team_elo, opponent_elo):
    """Expected score (win probability) of ``team_elo`` against ``opponent_elo``."""
    return 1.0 / (1.0 + math.pow(10, (opponent_elo - team_elo) / 400.0))


def outcome_from_scores(player1_score, player2_score):
    if player1_score > player2_score:
        return 'player1_win'
    if player2_score > player1_score:
        return 'player2_win'
    return 'draw'


def calculate_new_ratings(player1_rating, player2_rating, outcome, k_factor=32):
    """Rating changes for a two-player result.

    Returns a dict with ``player1_elo_after``, ``player1_elo_change``,
    ``player2_elo_after`` and ``player2_elo_change``.
    """
    if outcome not in _OUTCOME_SCORES:
        raise ValueError(f'Unknown outcome: {outcome}')
    player1_actual, player2_actual = _OUTCOME_SCORES[outcome]

    player1_change = round(k_factor * (
        player1_actual - expected_score(player1_rating, player2_rating)
    ))
    player2_change = round(k_factor * (
        player2_actual - expected_score(player2_rating, player1_rating)
    ))
    return {
        'player1_elo_after': player1_rating + player1_change,
        'player1_elo_change': float(player1_change),
        'player2_elo_after': player2_rating + player2_change,
        'player2_elo_change': float(player2_change),
    }


def singles_k_factor(player1, player2):
    """Average of both players' K-factors, rounded, so neither side is favoured."""
    k1 = get_k_factor(player1.elo_rating or DEFAULT_ELO, player1.games_played or 0)
    k2 = get_k_factor(player2.elo_rating or DEFAULT_ELO, player2.games_played or 0)
    return round((k1 + k2) / 2)


def score_margin_multiplier(winner_score, loser_score, elo_diff):
    """Score margin multiplier to reward convincing wins fairly.

    Log-based on the point difference, with an autocorrect term so a strong
    team beating a much weaker one by a lot doesn't inflate ratings.

    Args:
        winner_score: Points scored by the winning team.
        loser_score: Points scored by the losing team.
        elo_diff: Winner's team avg ELO minus loser's team avg ELO.
    """
    point_diff = max(winner_score - loser_score, 1)
    margin = math.log10(point_diff + 1)
    autocorrect = 2.2 / (abs(elo_diff) * 0.001 + 2.2)
    return max(0.5, min(margin * autocorrect + 0.5, 1.5))


def calculate_team_changes(team1_players, team2_players, team1_score, team2_score):
    """Calculate ELO changes for every player of a decided team match.

    Args:
        team1_players: List of dicts with 'elo_rating' and 'games_played'.
        team2_players: List of dicts with 'elo_rating' and 'games_played'.
        team1_score: Final score for team 1.
        team2_score: Final score for team 2.

    Returns:
        (team1_changes, team2_changes): lists of floats, one per player.
    """
    if not team1_players or not team2_players:
        raise ValueError('Both teams need at least one player')
    if team1_score == team2_score:
        raise ValueError('Team matches must have a winner')

    team1_avg = sum(p['elo_rating'] for p in team1_players) / len(team1_players)
    team2_avg = sum(p['elo_rating'] for p in team2_players) / len(team2_players)

    team1_won = team1_score > team2_score
    elo_diff = team1_avg - team2_avg if team1_won else team2_avg - team1_avg
    margin_mult = score_margin_multiplier(
        max(team1_score, team2_score), min(team1_score, team2_score), elo_diff,
    )

    team1_expected = expected_score(team1_avg, team2_avg)
    team1_actual = 1.0 if team1_won else 0.0

    def _changes(players, actual, expected):
        return [
            round(
                get_k_factor(p['elo_rating'], p['games_played'])
                * margin_mult * (actual - expected),
                1,
            )
            for p in players
        ]

    return (
        _changes(team1_players, team1_actual, team1_expected),
        _changes(team2_players, 1.0 - team1_actual, 1.0 - team1_expected),
    )


def skill_level_for(elo):
    """Map a rating onto the E to S skill ladder used in listings."""
    for upper_bound, level in _SKILL_LEVELS:
        if elo < upper_bound:
            return level
    return 'S'
