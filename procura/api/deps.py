"""
Shared router dependencies.

The AI capability, OCR engine, negotiation copilot and chatbot are built once
in the application lifespan and stored on app.state.
"""
from fastapi import Request

from procura.services.ai_gateway import AICapability
from procura.services.chatbot import ProcurementChatbot
from procura.services.negotiation_copilot import NegotiationCopilot
from procura.services.ocr_engine import OCREngine


def get_ai(request: Request) -> AICapability:
    return request.app.state.ai


def get_ocr(request: Request) -> OCREngine:
    return request.app.state.ocr


def get_copilot(request: Request) -> NegotiationCopilot:
    return request.app.state.copilot


def get_chatbot(request: Request) -> ProcurementChatbot:
    return request.app.state.chatbot
