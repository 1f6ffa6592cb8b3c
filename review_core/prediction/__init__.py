"""
Difficulty Prediction

This package provides cached, personalized difficulty predictions.
"""

from review_core.prediction.predictor import DifficultyPrediction, DifficultyPredictor

__all__ = ['DifficultyPrediction', 'DifficultyPredictor']
