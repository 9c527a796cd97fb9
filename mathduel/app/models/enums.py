from enum import StrEnum

class TournamentType(StrEnum):
    ARENA = "arena"
    SWISS = "swiss"

class TournamentStatus(StrEnum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    FINISHED = "finished"

class ParticipantStatus(StrEnum):
    REGISTERED = "registered"
    IN_LOBBY = "in_lobby"
    IN_GAME = "in_game"
    PAUSED = "paused"
    WITHDRAWN = "withdrawn"

class GameStatus(StrEnum):
    COUNTDOWN = "countdown"
    ACTIVE = "active"
    FINISHED = "finished"

class ResultType(StrEnum):
    WIN = "win"
    MISTAKES = "mistakes"
    RESIGN = "resign"
    TIMEOUT = "timeout"
    AFK = "afk"
    DRAW = "draw"
    BYE = "bye"
    TOURNAMENT_END = "tournament_end"

class Outcome(StrEnum):
    WIN = "win"
    LOSS = "loss"
    DRAW = "draw"
    BYE = "bye"

class AnswerType(StrEnum):
    EXACT = "exact"
    NUMERIC = "numeric"
    FRACTION = "fraction"
