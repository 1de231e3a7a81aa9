"""
Lifestyle Blueprint - Onboarding conversation and meal plan generation.

Guides a user through identity, metrics, diet preferences, calorie targets,
meal plan generation and shopping list generation.
"""

__version__ = "1.0.0"
