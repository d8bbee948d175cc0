"""
RAG URL routing.
"""
from django.urls import path

from apps.rag.views import AskView, BriefView, ReleaseView

urlpatterns = [
    path('tenders/<str:tender_id>/docs/<str:doc_hash>/ask', AskView.as_view(), name='rag-ask'),
    path('tenders/<str:tender_id>/docs/<str:doc_hash>/brief', BriefView.as_view(), name='rag-brief'),
    path('tenders/<str:tender_id>/docs/<str:doc_hash>/release', ReleaseView.as_view(), name='rag-release'),
]
