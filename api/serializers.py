"""
Serializers for API requests.
"""
from rest_framework import serializers


class TallyActionSerializer(serializers.Serializer):
    """Serializer for tally mutations."""
    action = serializers.ChoiceField(choices=['incr', 'decr', 'reset'])


class BatchItemSerializer(serializers.Serializer):
    """One operation of a batch."""
    op = serializers.ChoiceField(choices=[
        'get', 'set', 'delete', 'get_mime', 'set_mime',
        'tally', 'incr', 'decr', 'reset',
    ])
    key = serializers.CharField(trim_whitespace=False)
    value = serializers.CharField(required=False, allow_blank=True, trim_whitespace=False)
    mime = serializers.CharField(required=False)
    offset = serializers.IntegerField(required=False, default=0)

    def validate(self, attrs):
        if attrs['op'] == 'set' and 'value' not in attrs:
            raise serializers.ValidationError({'value': 'This field is required for set.'})
        if attrs['op'] == 'set_mime' and 'mime' not in attrs:
            raise serializers.ValidationError({'mime': 'This field is required for set_mime.'})
        return attrs


class BatchOperationSerializer(serializers.Serializer):
    """Serializer for batch operations."""
    operations = BatchItemSerializer(many=True, allow_empty=False)
