import logging

from django.conf import settings
from django.http import HttpResponse, JsonResponse
from django.shortcuts import render
from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response
from rest_framework.views import exception_handler

from . import exceptions
from .serializers import MessageSerializer, SubmitMessageSerializer
from .services import get_chat_service

log = logging.getLogger("parley")

CONTENT_REQUIRED = "Message content is required"


def _messages_payload(messages):
    return {"messages": MessageSerializer(messages, many=True).data}


# ---------- Liveness ----------
def liveness(request):
    return HttpResponse("Backend working with AI + fallback", content_type="text/plain")


# ---------- Simple health check ----------
def health(request):
    return JsonResponse({"status": "ok", "app": "parley", "version": 1})


# ---------- Web page ----------
def index(request):
    return render(request, "chat/index.html", {"model": settings.CHAT_MODEL})


# ---------- API: list / submit messages ----------
@api_view(["GET", "POST"])
def messages(request):
    service = get_chat_service()
    if request.method == "GET":
        return Response(_messages_payload(service.list_messages()))

    data = request.data if isinstance(request.data, dict) else {}
    serializer = SubmitMessageSerializer(data=data)
    if not serializer.is_valid():
        return Response({"error": CONTENT_REQUIRED}, status=status.HTTP_400_BAD_REQUEST)

    try:
        updated = service.submit(serializer.validated_data["content"])
    except exceptions.ValidationError as e:
        return Response({"error": str(e)}, status=status.HTTP_400_BAD_REQUEST)

    last = updated[-1]
    log.info("Chat turn %s | fallback=%s | history=%d", last.id - 1, last.fallback, len(updated))
    return Response(_messages_payload(updated))


def api_exception_handler(exc, context):
    """Report DRF errors (bad JSON, wrong method) as {"error": ...}."""
    response = exception_handler(exc, context)
    if response is not None:
        detail = response.data.get("detail") if isinstance(response.data, dict) else None
        response.data = {"error": str(detail or exc)}
    return response
