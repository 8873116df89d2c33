"""
Catalog and instance queries used by the ODBC backend.

Column aliases are the row keys documented on CatalogView; capture depends on
them. Database-scoped queries are prefixed with USE by the caller.
"""

PRINCIPALS = """
SELECT
    dp.principal_id,
    dp.sid,
    dp.name,
    dp.type,
    dp.type_desc,
    dp.default_schema_name,
    dp.is_fixed_role,
    dp.owning_principal_id,
    dpo.name AS owner_name,
    sp.name AS login_name,
    sp.type AS login_type,
    cer.name AS certificate_name
FROM sys.database_principals AS dp
    LEFT JOIN sys.server_principals AS sp ON dp.sid = sp.sid
    LEFT JOIN sys.database_principals AS dpo ON dp.owning_principal_id = dpo.principal_id
    LEFT JOIN sys.certificates AS cer ON dp.sid = cer.sid AND dp.type = 'C'
ORDER BY dp.principal_id
"""

OWNED_SCHEMAS = """
SELECT
    s.principal_id,
    s.schema_id,
    s.name AS schema_name
FROM sys.schemas AS s
ORDER BY s.schema_id
"""

ROLE_MEMBERSHIPS = """
SELECT
    drm.member_principal_id AS member_id,
    drm.role_principal_id AS role_id,
    role.name AS role_name
FROM sys.database_role_members AS drm
    INNER JOIN sys.database_principals AS role ON role.principal_id = drm.role_principal_id
ORDER BY drm.member_principal_id, drm.role_principal_id
"""

_PERMISSIONS_FROM = """
SELECT
    p.grantee_principal_id AS grantee_id,
    ge.name AS grantee_name,
    p.state_desc,
    p.permission_name,
    p.class_desc,
    CASE p.class_desc
        WHEN 'OBJECT_OR_COLUMN' THEN os.name
        WHEN 'TYPE' THEN ts.name
        WHEN 'XML_SCHEMA_COLLECTION' THEN xss.name
    END AS securable_schema,
    CASE p.class_desc
        WHEN 'DATABASE' THEN DB_NAME()
        WHEN 'SCHEMA' THEN s.name
        WHEN 'OBJECT_OR_COLUMN' THEN o.name
        WHEN 'DATABASE_PRINCIPAL' THEN pr.name
        WHEN 'ASSEMBLY' THEN a.name
        WHEN 'TYPE' THEN t.name
        WHEN 'XML_SCHEMA_COLLECTION' THEN xsc.name
        WHEN 'SERVICE_CONTRACT' THEN sc.name
        WHEN 'MESSAGE_TYPE' THEN smt.name
        WHEN 'REMOTE_SERVICE_BINDING' THEN rsb.name
        WHEN 'ROUTE' THEN r.name
        WHEN 'SERVICE' THEN sbs.name
        WHEN 'FULLTEXT_CATALOG' THEN fc.name
        WHEN 'FULLTEXT_STOPLIST' THEN fs.name
        WHEN 'SYMMETRIC_KEYS' THEN sk.name
        WHEN 'CERTIFICATE' THEN cer.name
        WHEN 'ASYMMETRIC_KEY' THEN ak.name
    END AS securable_name,
    CASE WHEN p.class_desc = 'OBJECT_OR_COLUMN' AND p.minor_id <> 0 THEN c.name END AS column_name,
    pr.type_desc AS principal_type_desc,
    g.name AS grantor_name
FROM sys.database_permissions AS p
    LEFT JOIN sys.schemas AS s ON p.class_desc = 'SCHEMA' AND p.major_id = s.schema_id
    LEFT JOIN sys.all_objects AS o
        INNER JOIN sys.schemas AS os ON o.schema_id = os.schema_id
        ON p.class_desc = 'OBJECT_OR_COLUMN' AND p.major_id = o.object_id
    LEFT JOIN sys.types AS t
        INNER JOIN sys.schemas AS ts ON t.schema_id = ts.schema_id
        ON p.class_desc = 'TYPE' AND p.major_id = t.user_type_id
    LEFT JOIN sys.xml_schema_collections AS xsc
        INNER JOIN sys.schemas AS xss ON xsc.schema_id = xss.schema_id
        ON p.class_desc = 'XML_SCHEMA_COLLECTION' AND p.major_id = xsc.xml_collection_id
    LEFT JOIN sys.columns AS c ON o.object_id = c.object_id AND p.minor_id = c.column_id
    LEFT JOIN sys.database_principals AS pr
        ON p.class_desc = 'DATABASE_PRINCIPAL' AND p.major_id = pr.principal_id
    LEFT JOIN sys.assemblies AS a ON p.class_desc = 'ASSEMBLY' AND p.major_id = a.assembly_id
    LEFT JOIN sys.service_contracts AS sc
        ON p.class_desc = 'SERVICE_CONTRACT' AND p.major_id = sc.service_contract_id
    LEFT JOIN sys.service_message_types AS smt
        ON p.class_desc = 'MESSAGE_TYPE' AND p.major_id = smt.message_type_id
    LEFT JOIN sys.remote_service_bindings AS rsb
        ON p.class_desc = 'REMOTE_SERVICE_BINDING' AND p.major_id = rsb.remote_service_binding_id
    LEFT JOIN sys.services AS sbs ON p.class_desc = 'SERVICE' AND p.major_id = sbs.service_id
    LEFT JOIN sys.routes AS r ON p.class_desc = 'ROUTE' AND p.major_id = r.route_id
    LEFT JOIN sys.fulltext_catalogs AS fc
        ON p.class_desc = 'FULLTEXT_CATALOG' AND p.major_id = fc.fulltext_catalog_id
    LEFT JOIN sys.fulltext_stoplists AS fs
        ON p.class_desc = 'FULLTEXT_STOPLIST' AND p.major_id = fs.stoplist_id
    LEFT JOIN sys.asymmetric_keys AS ak
        ON p.class_desc = 'ASYMMETRIC_KEY' AND p.major_id = ak.asymmetric_key_id
    LEFT JOIN sys.certificates AS cer
        ON p.class_desc = 'CERTIFICATE' AND p.major_id = cer.certificate_id
    LEFT JOIN sys.symmetric_keys AS sk
        ON p.class_desc = 'SYMMETRIC_KEYS' AND p.major_id = sk.symmetric_key_id
    INNER JOIN sys.database_principals AS g ON p.grantor_principal_id = g.principal_id
    INNER JOIN sys.database_principals AS ge ON p.grantee_principal_id = ge.principal_id
"""

PERMISSIONS = _PERMISSIONS_FROM + "ORDER BY p.grantee_principal_id\n"

# Permissions granted or denied by one principal, which block dropping it
PERMISSIONS_GRANTED_BY = _PERMISSIONS_FROM + "WHERE g.name = ?\n"

EXTENDED_PROPERTIES = """
SELECT
    ep.major_id AS principal_id,
    ep.name,
    CAST(ep.value AS nvarchar(4000)) AS value
FROM sys.extended_properties AS ep
WHERE ep.class = 4
ORDER BY ep.major_id, ep.name
"""

ROLE_MEMBERS = """
SELECT member.name
FROM sys.database_role_members AS drm
    INNER JOIN sys.database_principals AS role ON role.principal_id = drm.role_principal_id
    INNER JOIN sys.database_principals AS member ON member.principal_id = drm.member_principal_id
WHERE role.name = ? AND role.type = 'R'
"""

SCHEMAS_OWNED_BY = """
SELECT s.name
FROM sys.schemas AS s
    INNER JOIN sys.database_principals AS dp ON s.principal_id = dp.principal_id
WHERE dp.name = ?
"""

ROLES_OWNED_BY = """
SELECT role.name
FROM sys.database_principals AS role
    INNER JOIN sys.database_principals AS owner ON role.owning_principal_id = owner.principal_id
WHERE owner.name = ? AND role.type = 'R'
"""

INSTANCE_PROPERTIES = """
DECLARE @BackupPath nvarchar(4000);
EXEC master.dbo.xp_instance_regread
    N'HKEY_LOCAL_MACHINE',
    N'Software\\Microsoft\\MSSQLServer\\MSSQLServer',
    N'BackupDirectory',
    @BackupPath OUTPUT;
SELECT
    @@SERVERNAME AS server_name,
    CAST(SERVERPROPERTY('ProductVersion') AS nvarchar(128)) AS product_version,
    CAST(SERVERPROPERTY('InstanceDefaultDataPath') AS nvarchar(1024)) AS data_path,
    CAST(SERVERPROPERTY('InstanceDefaultLogPath') AS nvarchar(1024)) AS log_path,
    @BackupPath AS backup_path,
    CAST(ISNULL(SERVERPROPERTY('IsHadrEnabled'), 0) AS int) AS hadr_enabled
"""

IS_SYSADMIN = "SELECT IS_SRVROLEMEMBER('sysadmin')"

OBJECT_EXISTS = """
SELECT COUNT(*)
FROM sys.objects AS o
    INNER JOIN sys.schemas AS s ON o.schema_id = s.schema_id
WHERE o.type = ? AND s.name = ? AND o.name = ?
"""

DATABASE_EXISTS = "SELECT COUNT(*) FROM sys.databases WHERE name = ?"

LOGIN_EXISTS = "SELECT COUNT(*) FROM sys.server_principals WHERE name = ?"

DATABASE_FILES = """
SELECT
    mf.file_id,
    mf.name AS logical_name,
    mf.type,
    mf.size
FROM master.sys.master_files AS mf
    INNER JOIN master.sys.databases AS db ON mf.database_id = db.database_id
WHERE db.name = ?
ORDER BY mf.file_id
"""

MODEL_FILE_GROWTH = """
SELECT mf.type, mf.growth, mf.is_percent_growth
FROM master.sys.master_files AS mf
    INNER JOIN master.sys.databases AS db ON mf.database_id = db.database_id
WHERE db.name = 'model'
"""

AVAILABILITY_GROUP_EXISTS = "SELECT COUNT(*) FROM master.sys.availability_groups WHERE name = ?"

PRIMARY_REPLICA = """
SELECT hags.primary_replica
FROM sys.dm_hadr_availability_group_states AS hags
    INNER JOIN sys.availability_groups AS ag ON ag.group_id = hags.group_id
WHERE ag.name = ?
"""

DATABASE_IN_GROUP = """
SELECT COUNT(*)
FROM master.sys.dm_hadr_database_replica_states AS drs
    INNER JOIN master.sys.databases AS db ON drs.database_id = db.database_id
    INNER JOIN master.sys.availability_groups AS ag ON ag.group_id = drs.group_id
    INNER JOIN master.sys.availability_replicas AS ar ON ar.replica_id = drs.replica_id
WHERE ar.replica_server_name = @@SERVERNAME
    AND drs.is_local = 1
    AND drs.is_primary_replica = 1
    AND ag.name = ?
    AND db.name = ?
"""

SECONDARY_REPLICAS = """
SELECT ar.replica_server_name
FROM master.sys.dm_hadr_availability_group_states AS hags
    INNER JOIN master.sys.availability_replicas AS ar ON ar.group_id = hags.group_id
    INNER JOIN master.sys.availability_groups AS ag ON ag.group_id = hags.group_id
WHERE ag.name = ?
    AND ar.replica_server_name NOT LIKE hags.primary_replica
ORDER BY ar.replica_id
"""

LINKED_SERVER = """
SELECT name, is_rpc_out_enabled
FROM master.sys.servers
WHERE name = ? AND server_id <> 0
"""

# Four-part names cannot be parameterized; the server name is quoted by the caller.
REMOTE_PROCEDURE_EXISTS = (
    "SELECT COUNT(*) FROM {server}.[master].[sys].[objects] WHERE type = 'P' AND name = ?"
)

ROLLBACK = "IF @@TRANCOUNT > 0 ROLLBACK TRANSACTION"

COMMAND_EXECUTE = """
EXEC {procedure}
    @Command = ?,
    @CommandType = ?,
    @DatabaseName = ?,
    @Mode = ?,
    @LogToTable = ?,
    @Execute = ?
"""
