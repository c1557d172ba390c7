from django.urls import re_path

from .consumers import CarrierJobsConsumer

websocket_urlpatterns = [
    re_path(r"^ws/carrier/jobs/$", CarrierJobsConsumer.as_asgi()),
]
