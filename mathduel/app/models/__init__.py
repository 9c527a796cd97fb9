# Importing the package registers every table on Base.metadata
from mathduel.app.models.tournament_model import Tournament
from mathduel.app.models.participant_model import Participant
from mathduel.app.models.game_model import Game
from mathduel.app.models.problem_model import Problem
from mathduel.app.models.rating_model import UserRating, RatingHistory

__all__ = ["Tournament", "Participant", "Game", "Problem", "UserRating", "RatingHistory"]
