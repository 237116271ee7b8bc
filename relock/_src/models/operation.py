from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import Annotated

from relock._src.constants import OperationKind
from relock._src.models.package import PackageIdentity, ResolvedPackageRecord


class Install(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal[OperationKind.INSTALL] = OperationKind.INSTALL
    record: ResolvedPackageRecord

    def __str__(self):
        return f"+ {self.record.identity()}"

    @property
    def package(self) -> PackageIdentity:
        return self.record.identity()


class Remove(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal[OperationKind.REMOVE] = OperationKind.REMOVE
    package: PackageIdentity

    def __str__(self):
        return f"- {self.package}"


class Relink(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal[OperationKind.RELINK] = OperationKind.RELINK
    package: PackageIdentity

    def __str__(self):
        return f"~ {self.package}"


Operation = Annotated[Union[Install, Remove, Relink], Field(discriminator="kind")]
