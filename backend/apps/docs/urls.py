"""
URL configuration for the docs app.
"""
from django.urls import path
from . import views

app_name = 'docs'

urlpatterns = [
    path('uploads', views.create_upload, name='upload'),
    path('uploads/<uuid:upload_id>/complete', views.complete_upload, name='upload-complete'),
    path('tenders/<str:tender_id>/ingestion', views.tender_ingestion, name='ingestion'),
    path('tenders/<str:tender_id>/docs/<str:doc_hash>/progress', views.document_progress, name='progress'),
    path('tenders/<str:tender_id>/docs/<str:doc_hash>/ensure-index', views.ensure_document_index, name='ensure-index'),
    path('tenders/<str:tender_id>/docs/<str:doc_hash>/retry', views.retry_document_view, name='retry'),
]
