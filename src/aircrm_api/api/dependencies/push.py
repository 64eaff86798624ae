from aircrm_api.services.notifications.backend import HttpPushBackend, PushBackend


def get_push_backend() -> PushBackend:
    return HttpPushBackend()
