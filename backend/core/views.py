import logging

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated, AllowAny
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer, TokenRefreshSerializer
from rest_framework_simplejwt.exceptions import InvalidToken, TokenError, AuthenticationFailed
from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.core.exceptions import ObjectDoesNotExist
from backend.activity.store import ActivityStore
from .filters import AuditLogFilter
from .models import AuditLog
from .permissions import HasRolePermission, require_permissions, get_all_roles, DEFAULT_ROLE
from .serializers import (
    UserProfileSerializer, UserCreateSerializer, AuditLogSerializer
)
from .utils import create_audit_log

logger = logging.getLogger(__name__)

User = get_user_model()


class CustomTokenObtainPairSerializer(TokenObtainPairSerializer):
    def validate(self, attrs):
        data = super().validate(attrs)
        if not self.user.is_active:
            raise AuthenticationFailed('User account is disabled.')
        # A fresh login starts a fresh idle window, whatever the old session cookie holds
        ActivityStore().reset(self.user.pk, self.context.get('request'))
        create_audit_log(
            request=self.context.get('request'),
            action='login',
            model_name='User',
            object_id=self.user.pk,
            object_name=self.user.username,
            user=self.user,
        )
        data['user'] = UserProfileSerializer(self.user).data
        return data

    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        token['username'] = user.username
        token['groups'] = list(user.groups.values_list('name', flat=True))
        return token


class CustomTokenObtainPairView(TokenObtainPairView):
    serializer_class = CustomTokenObtainPairSerializer


class CustomTokenRefreshSerializer(TokenRefreshSerializer):
    """Custom token refresh serializer that handles deleted users gracefully"""
    def validate(self, attrs):
        try:
            return super().validate(attrs)
        except (InvalidToken, TokenError):
            raise InvalidToken('Token is invalid or expired.')
        except (ObjectDoesNotExist, User.DoesNotExist):
            raise InvalidToken('Token is invalid. User no longer exists.')


class CustomTokenRefreshView(TokenRefreshView):
    """Custom token refresh view that handles deleted users gracefully"""
    serializer_class = CustomTokenRefreshSerializer


@api_view(['POST'])
@permission_classes([AllowAny])
def register(request):
    """User registration endpoint"""
    serializer = UserCreateSerializer(data=request.data)
    if serializer.is_valid():
        user = serializer.save()
        group, _ = Group.objects.get_or_create(name=DEFAULT_ROLE)
        user.groups.add(group)
        ActivityStore().reset(user.pk, request)
        create_audit_log(
            request=request,
            action='register',
            model_name='User',
            object_id=user.pk,
            object_name=user.username,
            user=user,
        )
        token = CustomTokenObtainPairSerializer.get_token(user)
        return Response({
            'user': UserProfileSerializer(user).data,
            'access': str(token.access_token),
            'refresh': str(token),
        }, status=status.HTTP_201_CREATED)
    return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def user_me(request):
    """Get current user with role and permissions"""
    return Response(UserProfileSerializer(request.user).data)


@require_permissions('manage_users')
@api_view(['GET'])
@permission_classes([IsAuthenticated, HasRolePermission])
def role_list(request):
    """All roles with their permissions"""
    return Response({'roles': get_all_roles()})


@require_permissions('view_audit_logs')
@api_view(['GET'])
@permission_classes([IsAuthenticated, HasRolePermission])
def audit_log_list(request):
    """List audit logs with filtering"""
    filterset = AuditLogFilter(
        request.query_params,
        queryset=AuditLog.objects.select_related('user'),
    )
    if not filterset.is_valid():
        return Response(filterset.errors, status=status.HTTP_400_BAD_REQUEST)
    serializer = AuditLogSerializer(filterset.qs.order_by('-created_at'), many=True)
    return Response(serializer.data)
