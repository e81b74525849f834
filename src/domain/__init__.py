# -----------------------------------------------------------------------------
# DOMAIN LAYER
# -----------------------------------------------------------------------------
# Contains the release instructions (Pydantic models) shared by the build,
# template and deploy steps, plus the Azure DevOps hook payloads.
# -----------------------------------------------------------------------------

from .events import BuildComplete, Event, Notification
from .models import ImageRecipe, ImageRef, RecipeVariant, StackType, TemplateParameters

__all__ = [
    "BuildComplete",
    "Event",
    "ImageRecipe",
    "ImageRef",
    "Notification",
    "RecipeVariant",
    "StackType",
    "TemplateParameters",
]
