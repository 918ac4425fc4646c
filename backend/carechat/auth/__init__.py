"""Bearer-token verification against the Cognito user pool."""
