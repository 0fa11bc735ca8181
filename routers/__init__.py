"""Router package -- one APIRouter per domain, included by app.py."""

from routers.auth import router as auth_router
from routers.profiles import router as profiles_router
from routers.projects import router as projects_router
from routers.prompts import router as prompts_router
from routers.runs import router as runs_router
from routers.analytics import router as analytics_router

all_routers = [
    auth_router,
    profiles_router,
    projects_router,
    prompts_router,
    runs_router,
    analytics_router,
]
