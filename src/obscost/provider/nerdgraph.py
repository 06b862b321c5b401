"""
Query documents and response schemas for the New Relic NerdGraph API.

Every query has an explicit model for the `data` part of its response.
Missing or mistyped fields fail validation instead of being skipped.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

ACCOUNTS_QUERY = """
{
  actor {
    accounts {
      id
      name
    }
  }
}
"""

NRQL_QUERY = """
query($accountId: Int!, $nrql: Nrql!) {
  actor {
    account(id: $accountId) {
      nrql(query: $nrql) {
        results
      }
    }
  }
}
"""

AUTH_DOMAINS_QUERY = """
{
  actor {
    organization {
      authorizationManagement {
        authenticationDomains {
          authenticationDomains {
            id
          }
        }
      }
    }
  }
}
"""

USERS_QUERY = """
query($domainId: [ID!]) {
  actor {
    organization {
      userManagement {
        authenticationDomains(id: $domainId) {
          authenticationDomains {
            users {
              users {
                id
                name
                email
                lastActive
                type {
                  displayName
                  id
                }
              }
            }
          }
        }
      }
    }
  }
}
"""

DATA_USAGE_NRQL = (
    "SELECT sum(newRelicDbSize) FROM NrDailyUsage "
    "SINCE '{since}' UNTIL '{until}' FACET productLine"
)

CONSUMPTION_NRQL = (
    "SELECT latest(totalAmount) AS cost, latest(unit) AS unit, "
    "latest(productLine) AS productLine, latest(usageMetric) AS metric "
    "FROM NrConsumption SINCE '{since}' UNTIL '{until}' "
    "FACET productLine, usageMetric"
)


class Schema(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class GraphQLError(Schema):
    message: "str"


class GraphQLResponse(Schema):
    data: "dict[str, Any] | None" = None
    errors: "list[GraphQLError]" = Field(default_factory=list)


# accounts


class AccountRef(Schema):
    id: "int"
    name: "str" = ""


class ActorAccounts(Schema):
    accounts: "list[AccountRef]"


class AccountsData(Schema):
    actor: "ActorAccounts"


# nrql


class NrqlResults(Schema):
    results: "list[dict[str, Any]]"


class AccountNrql(Schema):
    nrql: "NrqlResults"


class ActorAccountNrql(Schema):
    account: "AccountNrql"


class NrqlData(Schema):
    actor: "ActorAccountNrql"


class DataUsageRow(Schema):
    product_line: "str" = Field(alias="productLine")
    db_size: "float" = Field(alias="sum.newRelicDbSize")


class ConsumptionRow(Schema):
    product_line: "str" = Field(alias="productLine")
    cost: "float"
    # latest() yields null when nothing was reported
    unit: "str | None" = None
    metric: "str | None" = None


# authentication domains


class DomainRef(Schema):
    id: "str"


class DomainRefList(Schema):
    authentication_domains: "list[DomainRef]" = Field(alias="authenticationDomains")


class AuthorizationManagement(Schema):
    authentication_domains: "DomainRefList" = Field(alias="authenticationDomains")


class OrganizationAuthorization(Schema):
    authorization_management: "AuthorizationManagement" = Field(
        alias="authorizationManagement"
    )


class ActorOrganizationAuthorization(Schema):
    organization: "OrganizationAuthorization"


class AuthDomainsData(Schema):
    actor: "ActorOrganizationAuthorization"


# users


class UserType(Schema):
    display_name: "str | None" = Field(default=None, alias="displayName")
    id: "str | None" = None


class NerdGraphUser(Schema):
    id: "str"
    name: "str" = ""
    email: "str" = ""
    last_active: "str | None" = Field(default=None, alias="lastActive")
    type: "UserType | None" = None


class UserList(Schema):
    users: "list[NerdGraphUser]"


class DomainUsers(Schema):
    users: "UserList"


class DomainUsersList(Schema):
    authentication_domains: "list[DomainUsers]" = Field(alias="authenticationDomains")


class UserManagement(Schema):
    authentication_domains: "DomainUsersList" = Field(alias="authenticationDomains")


class OrganizationUsers(Schema):
    user_management: "UserManagement" = Field(alias="userManagement")


class ActorOrganizationUsers(Schema):
    organization: "OrganizationUsers"


class UsersData(Schema):
    actor: "ActorOrganizationUsers"
