from fastapi import Request

from jobmaster.services.job_service import JobServices


def get_services(request: Request) -> JobServices:
    return request.app.state.services
