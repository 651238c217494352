from rest_framework import serializers

from .models import ROLE_CHOICES


class MessageSerializer(serializers.Serializer):
    id = serializers.IntegerField(read_only=True)
    role = serializers.ChoiceField(choices=ROLE_CHOICES, read_only=True)
    content = serializers.CharField(read_only=True)
    createdAt = serializers.DateTimeField(source="created_at", read_only=True)
    fallback = serializers.BooleanField(read_only=True)


class SubmitMessageSerializer(serializers.Serializer):
    # content is stored verbatim; only the emptiness check looks at the trimmed text
    content = serializers.CharField(trim_whitespace=False, allow_blank=False)

    def validate_content(self, value):
        if not isinstance(self.initial_data.get("content"), str) or not value.strip():
            raise serializers.ValidationError("Message content is required")
        return value
