from pydantic import BaseModel, ConfigDict, Field


class Credentials(BaseModel):
    username: str = ""
    password: str = Field(default="", repr=False)
    target_url: str | None = Field(default=None, alias="targetUrl")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def is_complete(self) -> bool:
        return bool(self.username and self.password)
