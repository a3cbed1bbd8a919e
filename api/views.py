"""
API views for the bucketed key-value store.
"""
import logging
from datetime import datetime

from django.http import HttpResponse
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

import plainkv
from plainkv.exceptions import (
    ConcurrentUseError,
    DatabaseConnectionError,
    StoreError,
    TransactionError,
    ValidationError,
    ValueTooLongError,
)

from .serializers import BatchOperationSerializer, TallyActionSerializer
from .store_manager import store_manager

logger = logging.getLogger(__name__)


class BaseStoreView(APIView):
    """Base view with common functionality."""

    def get_store(self, bucket: str):
        """Get the shared store instance for a bucket."""
        return store_manager.get_store(bucket)

    def handle_store_error(self, error: Exception) -> Response:
        """Handle store-related errors."""
        if isinstance(error, ValueTooLongError):
            code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
        elif isinstance(error, ValidationError):
            code = status.HTTP_400_BAD_REQUEST
        elif isinstance(error, ConcurrentUseError):
            code = status.HTTP_409_CONFLICT
        elif isinstance(error, TransactionError):
            code = status.HTTP_409_CONFLICT
        elif isinstance(error, DatabaseConnectionError):
            code = status.HTTP_503_SERVICE_UNAVAILABLE
        else:
            logger.exception("Unexpected store error")
            return Response({
                'error': 'InternalError',
                'message': str(error)
            }, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        return Response({
            'error': type(error).__name__,
            'message': str(error)
        }, status=code)


class HealthCheckView(BaseStoreView):
    """Health check endpoint."""

    def get(self, request) -> Response:
        """Get health status."""
        try:
            self.get_store('default').open()
        except StoreError as e:
            return Response({
                'status': 'unhealthy',
                'timestamp': datetime.now().isoformat(),
                'error': str(e)
            }, status=status.HTTP_503_SERVICE_UNAVAILABLE)

        return Response({
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'version': plainkv.__version__,
            'store_status': 'operational'
        }, status=status.HTTP_200_OK)


class KeyView(BaseStoreView):
    """Raw value access; the stored mime type is the response content type."""

    def get(self, request, bucket: str, key: str):
        try:
            store = self.get_store(bucket)
            value = store.get(key)
            if not value:
                return Response({
                    'error': 'KeyNotFound',
                    'message': f"Key '{key}' not found"
                }, status=status.HTTP_404_NOT_FOUND)
            mime = store.get_mime(key)
        except StoreError as e:
            return self.handle_store_error(e)

        return HttpResponse(value, content_type=mime)

    def put(self, request, bucket: str, key: str) -> Response:
        body = request.body
        mime = request.META.get('CONTENT_TYPE') or 'application/octet-stream'
        try:
            with store_manager.session(bucket) as store:
                with store.transaction():
                    store.set(key, body)
                    store.set_mime(key, mime)
        except StoreError as e:
            return self.handle_store_error(e)

        return Response({
            'bucket': store.bucket,
            'key': key,
            'size': len(body),
            'mime': mime,
        }, status=status.HTTP_200_OK)

    def delete(self, request, bucket: str, key: str) -> Response:
        try:
            self.get_store(bucket).delete(key)
        except StoreError as e:
            return self.handle_store_error(e)

        return Response({
            'key': key,
            'message': 'Key deleted successfully'
        }, status=status.HTTP_200_OK)


class KeyListView(BaseStoreView):
    """List keys by prefix."""

    def get(self, request, bucket: str) -> Response:
        prefix = request.query_params.get('prefix', '')
        try:
            store = self.get_store(bucket)
            keys = store.list_keys(prefix)
        except StoreError as e:
            return self.handle_store_error(e)

        return Response({
            'bucket': store.bucket,
            'prefix': prefix,
            'keys': sorted(keys),
        }, status=status.HTTP_200_OK)


class TallyView(BaseStoreView):
    """Read and mutate tallies."""

    def get(self, request, bucket: str, key: str) -> Response:
        try:
            offset = int(request.query_params.get('offset', 0))
        except ValueError:
            return Response({
                'error': 'ValidationError',
                'message': 'offset must be an integer'
            }, status=status.HTTP_400_BAD_REQUEST)

        try:
            value = self.get_store(bucket).tally(key, offset)
        except StoreError as e:
            return self.handle_store_error(e)

        return Response({'key': key, 'value': value}, status=status.HTTP_200_OK)

    def post(self, request, bucket: str, key: str) -> Response:
        serializer = TallyActionSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        action = serializer.validated_data['action']
        try:
            store = self.get_store(bucket)
            if action == 'incr':
                value = store.tally_incr(key)
            elif action == 'decr':
                value = store.tally_decr(key)
            else:
                store.tally_reset(key)
                value = 0
        except StoreError as e:
            return self.handle_store_error(e)

        return Response({'key': key, 'value': value}, status=status.HTTP_200_OK)


def _apply(store, item: dict) -> dict:
    """Run one batch item and describe its outcome."""
    op, key = item['op'], item['key']
    result = {'op': op, 'key': key, 'status': 'success'}

    if op == 'get':
        result['value'] = store.get(key).decode('utf-8', errors='replace')
    elif op == 'set':
        store.set(key, item['value'].encode('utf-8'))
    elif op == 'delete':
        store.delete(key)
    elif op == 'get_mime':
        result['mime'] = store.get_mime(key)
    elif op == 'set_mime':
        store.set_mime(key, item['mime'])
    elif op == 'tally':
        result['value'] = store.tally(key, item['offset'])
    elif op == 'incr':
        result['value'] = store.tally_incr(key)
    elif op == 'decr':
        result['value'] = store.tally_decr(key)
    elif op == 'reset':
        store.tally_reset(key)
        result['value'] = 0
    return result


class BatchOperationView(BaseStoreView):
    """Batch operations, all applied in one transaction or not at all."""

    def post(self, request, bucket: str) -> Response:
        """Execute batch operations."""
        serializer = BatchOperationSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        operations = serializer.validated_data['operations']
        results = []
        try:
            with store_manager.session(bucket) as store:
                transaction_id = store.begin()
                for index, item in enumerate(operations):
                    try:
                        results.append(_apply(store, item))
                    except StoreError as e:
                        store.rollback()
                        response = self.handle_store_error(e)
                        response.data.update({
                            'failed_index': index,
                            'status': 'rolled_back',
                        })
                        return response
                store.commit()
        except StoreError as e:
            return self.handle_store_error(e)

        return Response({
            'transaction_id': transaction_id,
            'status': 'committed',
            'results': results,
            'success_count': len(results),
        }, status=status.HTTP_200_OK)
