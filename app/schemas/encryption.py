from pydantic import BaseModel, Field


class EncryptedPayload(BaseModel):
    """Base64-encoded AES-GCM output plus everything needed to decrypt it."""

    ciphertext: str
    iv: str
    salt: str
    tag: str
    version: int = 1


class PasswordStrength(BaseModel):
    score: int = Field(ge=0, le=100)
    is_strong: bool
    feedback: list[str] = []


class PasswordStrengthRequest(BaseModel):
    password: str = Field(..., max_length=1024)


class GeneratedPassword(BaseModel):
    password: str
    strength: PasswordStrength
